import asyncio
import json

import pytest

import task_time_tracker as ttt

DAY = '2024-01-10'


def stored_ledger(storage, day=DAY):
    return ttt.ledger_from_raw(storage.data.get(ttt.ledger_key(day)))


def test_stop_commits_elapsed_and_draft_note(tracker, storage, clock):
    async def scenario():
        await tracker.start('Write report')
        await tracker.record_draft_note('  outline done  ')
        clock.advance(minutes=30)
        return await tracker.stop()

    result = asyncio.run(scenario())
    assert result.elapsed_ms == 1800000
    entry = stored_ledger(storage)['Write report']
    assert entry.time == 1800000
    assert entry.notes == [ttt.Note(text='outline done', timestamp='09:30:00', duration='00:30:00')]
    assert tracker.get_running_session() is None


def test_blank_draft_adds_no_note_and_commits_accumulate(tracker, storage, clock):
    async def scenario():
        for minutes in (10, 5):
            await tracker.start('A')
            await tracker.record_draft_note('   ')
            clock.advance(minutes=minutes)
            await tracker.stop()

    asyncio.run(scenario())
    entry = stored_ledger(storage)['A']
    assert entry.time == 15 * 60 * 1000
    assert entry.notes == []


def test_start_while_running_commits_previous_task(tracker, storage, clock):
    async def scenario():
        await tracker.start('A')
        clock.advance(minutes=10)
        await tracker.start('B')
        clock.advance(minutes=20)
        await tracker.stop()

    asyncio.run(scenario())
    ledger = stored_ledger(storage)
    assert ledger['A'].time == 600000
    assert ledger['B'].time == 1200000


def test_start_rejects_empty_name_without_stopping(tracker, clock):
    async def scenario():
        await tracker.start('A')
        with pytest.raises(ttt.EmptyTaskNameError):
            await tracker.start('  ')
        return tracker.get_running_session()

    assert asyncio.run(scenario()).task_name == 'A'


def test_stop_commits_into_owner_day_after_navigation(tracker, storage, clock):
    async def scenario():
        await tracker.start('A')
        assert tracker.shift_selected_day(-1)
        clock.advance(minutes=1)
        await tracker.stop()

    asyncio.run(scenario())
    assert tracker.selected_day == '2024-01-09'
    assert stored_ledger(storage, DAY)['A'].time == 60000
    assert ttt.ledger_key('2024-01-09') not in storage.data


def test_rename_running_task_then_stop_lands_on_new_name(tracker, storage, clock):
    async def scenario():
        await tracker.start('Draft')
        clock.advance(minutes=5)
        await tracker.stop()
        await tracker.start('Draft')
        assert await tracker.rename('Draft', 'Final')
        clock.advance(minutes=7)
        await tracker.stop()

    asyncio.run(scenario())
    ledger = stored_ledger(storage)
    assert list(ledger) == ['Final']
    assert ledger['Final'].time == 12 * 60 * 1000


def test_rename_merge_sums_times_and_keeps_running_identity(tracker, storage, clock):
    storage.data[ttt.ledger_key(DAY)] = {
        'Review': {'time': 1000, 'notes': [{'text': 'r1', 'timestamp': '08:00:00'}]},
        'review': {'time': 2000, 'notes': [{'text': 'r2', 'timestamp': '08:30:00'}]},
    }

    async def scenario():
        await tracker.start('review')
        assert await tracker.rename('review', 'Review')
        return tracker.get_running_session()

    running = asyncio.run(scenario())
    assert running.task_name == 'Review'
    entry = stored_ledger(storage)['Review']
    assert entry.time == 3000
    assert [n.text for n in entry.notes] == ['r1', 'r2']


def test_rename_on_other_day_leaves_running_session(tracker, storage, clock):
    storage.data[ttt.ledger_key('2024-01-09')] = {'A': {'time': 1000, 'notes': []}}

    async def scenario():
        await tracker.start('A')
        return await tracker.rename('A', 'B', day='2024-01-09')

    assert asyncio.run(scenario()) is True
    assert tracker.get_running_session().task_name == 'A'
    assert list(stored_ledger(storage, '2024-01-09')) == ['B']


def test_rename_absent_task_is_noop(tracker, storage):
    assert asyncio.run(tracker.rename('Missing', 'Other')) is False
    assert storage.data == {}


def test_rename_to_blank_name_raises(tracker, storage):
    storage.data[ttt.ledger_key(DAY)] = {'A': {'time': 1000, 'notes': []}}
    with pytest.raises(ttt.EmptyTaskNameError):
        asyncio.run(tracker.rename('A', '   '))
    assert list(stored_ledger(storage)) == ['A']


def test_adjust_time_validates_before_writing(tracker, storage):
    storage.data[ttt.ledger_key(DAY)] = {'A': {'time': 1000, 'notes': [{'text': 'n', 'timestamp': 't'}]}}

    with pytest.raises(ttt.InvalidDurationError):
        asyncio.run(tracker.adjust_time('A', '25:61:00'))
    assert stored_ledger(storage)['A'].time == 1000

    assert asyncio.run(tracker.adjust_time('A', '01:02:03')) is True
    entry = stored_ledger(storage)['A']
    assert entry.time == 3723000
    assert [n.text for n in entry.notes] == ['n']

    assert asyncio.run(tracker.adjust_time('Missing', '00:00:01')) is False


def test_edit_notes_replaces_and_drops_blank(tracker, storage):
    storage.data[ttt.ledger_key(DAY)] = {'A': {'time': 1000, 'notes': [{'text': 'old', 'timestamp': 't'}]}}
    notes = [ttt.Note(text='kept', timestamp='t'), ttt.Note(text=' '), ttt.Note(text='added', timestamp='10:00:00')]
    assert asyncio.run(tracker.edit_notes('A', notes)) is True
    entry = stored_ledger(storage)['A']
    assert entry.time == 1000
    assert [n.text for n in entry.notes] == ['kept', 'added']
    assert storage.data[ttt.ledger_key(DAY)]['A']['notes'][1] == {'text': 'added', 'timestamp': '10:00:00'}


def test_commit_is_additive_and_creates_entry(tracker, storage):
    async def scenario():
        await tracker.commit(DAY, 'A', 1000)
        await tracker.commit(DAY, 'A', 2000, 'second')
        await tracker.commit(DAY, 'A', -50)

    asyncio.run(scenario())
    entry = stored_ledger(storage)['A']
    assert entry.time == 3000
    assert [(n.text, n.duration) for n in entry.notes] == [('second', '00:00:02')]


def test_stop_after_failed_read_does_not_overwrite(temp_db_path, clock):
    db = ttt.SqliteStorage(str(temp_db_path))
    try:
        db.conn.execute("INSERT INTO kv(key, value, updated_at) VALUES (?,?,?)",
                        (ttt.ledger_key(DAY), '{corrupt', 'now'))
        db.conn.commit()
        tracker = ttt.TimeTracker(db, clock=clock)

        async def scenario():
            await tracker.start('A')
            clock.advance(minutes=1)
            return await tracker.stop()

        result = asyncio.run(scenario())
        raw = db.conn.execute("SELECT value FROM kv WHERE key=?", (ttt.ledger_key(DAY),)).fetchone()[0]
    finally:
        db.close()
    assert result.elapsed_ms == 60000
    assert result.committed is False
    assert raw == '{corrupt'


def test_reads_degrade_without_storage(clock):
    tracker = ttt.TimeTracker(None, clock=clock)

    async def scenario():
        await tracker.start('A')
        clock.advance(seconds=3)
        await tracker.stop()
        return await tracker.get_ledger(), await tracker.get_total()

    assert asyncio.run(scenario()) == ({}, 0)


def test_sorted_tasks_and_total(tracker, storage):
    storage.data[ttt.ledger_key(DAY)] = {'Small': 1000, 'Big': {'time': 9000, 'notes': []}}

    async def scenario():
        return await tracker.sorted_tasks(), await tracker.get_total()

    rows, total = asyncio.run(scenario())
    assert [name for name, _ in rows] == ['Big', 'Small']
    assert total == 10000


def test_markdown_export_format(tracker, storage):
    storage.data[ttt.ledger_key(DAY)] = {
        'Small': {'time': 60000, 'notes': []},
        'Big': {'time': 3723000, 'notes': [
            {'text': 'first', 'timestamp': '09:30:00', 'duration': '00:30:00'},
            {'text': 'edited', 'timestamp': '10:00:00'},
            {'text': 'bare'},
        ]},
    }
    assert asyncio.run(tracker.to_markdown()) == "\n".join([
        "# Tasks for 2024-01-10",
        "",
        "- **Big** — 01:02:03",
        "  - (09:30:00 00:30:00) first",
        "  - (10:00:00) edited",
        "  - bare",
        "",
        "- **Small** — 00:01:00",
        "",
    ])


def test_markdown_export_empty_day(tracker):
    assert asyncio.run(tracker.to_markdown('2024-01-01')) == (
        "# Tasks for 2024-01-01\n\n- No tasks tracked for this date."
    )


def test_export_markdown_writes_day_file(tracker, storage, tmp_path):
    storage.data[ttt.ledger_key(DAY)] = {'A': {'time': 1000, 'notes': []}}
    out_path = asyncio.run(tracker.export_markdown(str(tmp_path / 'exports')))
    assert out_path.name == 'tasks_2024-01-10.md'
    assert out_path.read_text(encoding='utf-8').startswith('# Tasks for 2024-01-10')


def test_day_navigation_stops_at_today(tracker, clock):
    assert tracker.selected_day == DAY
    assert not tracker.can_go_forward()
    assert tracker.shift_selected_day(1) is False
    assert tracker.shift_selected_day(-2) is True
    assert tracker.selected_day == '2024-01-08'
    assert tracker.can_go_forward()
    assert tracker.shift_selected_day(1) is True
    assert tracker.go_today() is True
    assert tracker.selected_day == DAY
    assert tracker.go_today() is False

    clock.advance(days=1)
    assert tracker.can_go_forward()


def test_select_day_validates(tracker):
    with pytest.raises(ValueError):
        tracker.select_day('2024-13-01')
    tracker.select_day('2023-05-06')
    assert tracker.selected_day == '2023-05-06'


def test_startup_offers_same_day_session(storage, clock):
    storage.data[ttt.RUNNING_KEY] = {'task': 'A', 'startTime': ttt.to_epoch_ms(clock.now()), 'notes': 'n', 'date': DAY}
    storage.data[ttt.THEME_KEY] = 'light'
    tracker = ttt.TimeTracker(storage, clock=clock)

    async def scenario():
        offer = await tracker.startup()
        await tracker.resume(offer)
        clock.advance(minutes=2)
        return offer, tracker.elapsed_ms(), await tracker.stop()

    offer, elapsed, result = asyncio.run(scenario())
    assert offer.task_name == 'A'
    assert tracker.theme == 'light'
    assert elapsed == 120000
    assert result.notes == 'n'
    assert stored_ledger(storage)['A'].notes[0].text == 'n'


def test_declining_resume_discards_without_commit(storage, clock):
    storage.data[ttt.RUNNING_KEY] = {'task': 'A', 'startTime': ttt.to_epoch_ms(clock.now()), 'notes': '', 'date': DAY}
    tracker = ttt.TimeTracker(storage, clock=clock)

    async def scenario():
        offer = await tracker.startup()
        await tracker.decline_resume()
        return offer

    assert asyncio.run(scenario()) is not None
    assert storage.data == {}


def test_theme_preference_round_trip(tracker, storage):
    asyncio.run(tracker.save_theme('Light'))
    assert storage.data[ttt.THEME_KEY] == 'light'
    fresh = ttt.TimeTracker(storage, clock=tracker.clock)
    assert asyncio.run(fresh.load_theme()) == 'light'


def test_import_legacy_json_copies_missing_keys(tmp_path, storage):
    dump = tmp_path / 'localStorage.json'
    dump.write_text(json.dumps({
        'tasks_2024-01-09': json.dumps({'Old': 5000}),
        'tasks_2024-01-10': {'New': {'time': 1, 'notes': []}},
        'tasks_bogus': {'x': 1},
        'timetracker-running': json.dumps({'task': 'A', 'startTime': 1, 'notes': '', 'date': '2024-01-09'}),
        'timetracker-theme': 'light',
        'unrelated': 'x',
    }), encoding='utf-8')
    storage.data[ttt.ledger_key('2024-01-10')] = {'Existing': {'time': 7, 'notes': []}}

    first = asyncio.run(ttt.import_legacy_json(storage, str(dump)))
    second = asyncio.run(ttt.import_legacy_json(storage, str(dump)))

    assert first == 2
    assert second == 0
    assert storage.data[ttt.ledger_key('2024-01-09')] == {'Old': 5000}
    assert storage.data[ttt.ledger_key('2024-01-10')] == {'Existing': {'time': 7, 'notes': []}}
    assert ttt.RUNNING_KEY in storage.data
    assert 'tasks_bogus' not in storage.data
    assert stored_ledger(storage, '2024-01-09')['Old'].time == 5000


def test_import_legacy_json_rejects_unreadable_file(tmp_path, storage):
    bad = tmp_path / 'bad.json'
    bad.write_text('[1, 2', encoding='utf-8')
    with pytest.raises(ValueError):
        asyncio.run(ttt.import_legacy_json(storage, str(bad)))
    with pytest.raises(ValueError):
        asyncio.run(ttt.import_legacy_json(storage, str(tmp_path / 'missing.json')))


def test_rename_running_task_with_edited_notes(tracker, storage, clock):
    seed = {'Draft': {'time': 4000, 'notes': [{'text': 'old', 'timestamp': '08:00:00'}]},
            'Final': {'time': 6000, 'notes': [{'text': 'kept', 'timestamp': '08:30:00'}]}}
    storage.data[ttt.ledger_key(DAY)] = seed

    async def scenario():
        await tracker.start('Draft')
        assert await tracker.rename('Draft', 'Final', notes=[ttt.Note(text='edited', timestamp='09:00:00')])
        return tracker.get_running_session(), await tracker.get_total()

    running, total = asyncio.run(scenario())
    assert running.task_name == 'Final'
    assert total == 10000
    entry = stored_ledger(storage)['Final']
    assert entry.time == 10000
    assert [n.text for n in entry.notes] == ['kept', 'edited']


def test_stop_reports_skipped_commit_when_storage_fails(tracker, storage, clock):
    async def scenario():
        await tracker.start('A')
        clock.advance(minutes=2)
        storage.available = False
        return await tracker.stop()

    result = asyncio.run(scenario())
    assert result.elapsed_ms == 120000
    assert result.committed is False
    assert tracker.get_running_session() is None


def test_stop_reports_successful_commit(tracker, clock):
    async def scenario():
        await tracker.start('A')
        clock.advance(seconds=1)
        return await tracker.stop()

    assert asyncio.run(scenario()).committed is True


def test_tracker_built_outside_loop_serializes_concurrent_intents(temp_db_path, clock):
    db = ttt.SqliteStorage(str(temp_db_path))
    tracker = ttt.TimeTracker(db, clock=clock)

    async def scenario():
        await asyncio.gather(*(tracker.commit(DAY, 'A', 1000, f'note {i}') for i in range(5)))

    try:
        # each asyncio.run is a fresh loop; commits inside one contend for the lock
        asyncio.run(scenario())
        asyncio.run(scenario())
        entry = ttt.ledger_from_raw(db.get_sync(ttt.ledger_key(DAY)))['A']
    finally:
        db.close()
    assert entry.time == 10000
    assert len(entry.notes) == 10
