import threading

import pytest

from audio_analyzer.errors import (
    InferenceFailure,
    InvalidInput,
    JobTimeout,
    SpawnFailure,
    StorageFailure,
    WorkerCrashed,
    WorkerError,
)
from audio_analyzer.models import JobState, WorkResult
from audio_analyzer.process import WorkerOutcome
from conftest import FakeClassifier, FakeSpawner, InMemoryStore, make_result, wait_until


def test_submit_returns_result(make_dispatcher, spawner, store):
    dispatcher = make_dispatcher(spawner)

    result = dispatcher.submit('a.mp3').result(timeout=5)

    assert isinstance(result, WorkResult)
    assert result.task_key == 'task:a.mp3'
    assert store.results['task:a.mp3'] == result
    assert store.states['task:a.mp3'][:2] == [JobState.QUEUED, JobState.ACTIVE]
    assert store.states['task:a.mp3'][-1] == JobState.COMPLETED


def test_invalid_input_is_rejected_without_a_slot(make_dispatcher, spawner):
    dispatcher = make_dispatcher(spawner)

    with pytest.raises(InvalidInput):
        dispatcher.submit('   ')

    stats = dispatcher.stats()
    assert stats.dispatched == 0
    assert stats.inflight == 0
    assert spawner.spawned == []


def test_concurrent_duplicates_share_one_worker(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner)
    futures = []
    barrier = threading.Barrier(8)

    def submit():
        barrier.wait()
        futures.append(dispatcher.submit('music/a.mp3'))

    threads = [threading.Thread(target=submit) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert len(futures) == 8
    assert all(future is futures[0] for future in futures)
    gate.set()
    results = {id(future.result(timeout=5)) for future in futures}

    assert len(results) == 1
    assert spawner.spawned == ['music/a.mp3']


def test_duplicate_with_different_whitespace_joins(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner)

    first = dispatcher.submit('a.mp3')
    second = dispatcher.submit('  a.mp3  ')
    gate.set()

    assert first is second
    assert first.result(timeout=5) is second.result(timeout=5)


def test_active_workers_never_exceed_limit(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner, max_workers=2)

    futures = [dispatcher.submit(f'{i}.mp3') for i in range(5)]
    assert wait_until(lambda: len(spawner.spawned) == 2)

    stats = dispatcher.stats()
    assert stats.active == 2
    assert stats.pending == 3
    assert not dispatcher.has_capacity()

    gate.set()
    for future in futures:
        future.result(timeout=5)

    assert spawner.peak == 2
    assert dispatcher.stats().peak_active == 2


def test_pending_jobs_start_in_submission_order(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner, max_workers=1)

    futures = [dispatcher.submit(ref) for ref in ('a.mp3', 'b.mp3', 'c.mp3', 'd.mp3')]
    gate.set()
    for future in futures:
        future.result(timeout=5)

    assert spawner.spawned == ['a.mp3', 'b.mp3', 'c.mp3', 'd.mp3']


def test_every_terminal_path_releases_exactly_one_slot(make_dispatcher, store):
    spawner = FakeSpawner()
    spawner.outcomes['error.mp3'] = WorkerOutcome(message={'type': 'error', 'reason': 'decode failed'})
    spawner.outcomes['crash.mp3'] = WorkerOutcome(exitcode=-9)
    spawner.outcomes['slow.mp3'] = WorkerOutcome(timed_out=True)
    spawner.spawn_errors['nospawn.mp3'] = OSError('fork failed')
    dispatcher = make_dispatcher(spawner, max_workers=1)

    expected = {
        'ok.mp3': None,
        'error.mp3': WorkerError,
        'crash.mp3': WorkerCrashed,
        'slow.mp3': JobTimeout,
        'nospawn.mp3': SpawnFailure,
    }
    futures = {ref: dispatcher.submit(ref) for ref in expected}

    for ref, error_type in expected.items():
        future = futures[ref]
        if error_type is None:
            assert isinstance(future.result(timeout=5), WorkResult)
        else:
            assert isinstance(future.exception(timeout=5), error_type)

    assert wait_until(lambda: dispatcher.stats().inflight == 0)
    stats = dispatcher.stats()
    assert stats.active == 0
    assert stats.dispatched == 5
    assert stats.released == 5
    assert all(handle.closed == 1 for handle in spawner.handles)
    assert spawner.handles[[h.source_ref for h in spawner.handles].index('slow.mp3')].terminated

    states = {key: state for key, state, _ in store.failures}
    assert states['task:slow.mp3'] == JobState.TIMED_OUT
    assert states['task:crash.mp3'] == JobState.FAILED


def test_inference_failure_releases_slot(make_dispatcher, store):
    spawner = FakeSpawner()
    dispatcher = make_dispatcher(spawner, max_workers=1)
    dispatcher.supervisor.aggregator.models['mood_happy'] = FakeClassifier('mood_happy', error=RuntimeError('nan'))

    error = dispatcher.submit('a.mp3').exception(timeout=5)

    assert isinstance(error, InferenceFailure)
    assert wait_until(lambda: dispatcher.stats().released == 1)
    assert dispatcher.stats().active == 0


def test_one_failure_does_not_affect_siblings(make_dispatcher):
    spawner = FakeSpawner()
    spawner.outcomes['bad.mp3'] = WorkerOutcome(exitcode=1)
    dispatcher = make_dispatcher(spawner, max_workers=2)

    good = [dispatcher.submit(f'good-{i}.mp3') for i in range(3)]
    bad = dispatcher.submit('bad.mp3')

    assert isinstance(bad.exception(timeout=5), WorkerCrashed)
    assert all(isinstance(f.result(timeout=5), WorkResult) for f in good)


def test_cache_hit_skips_worker(make_dispatcher, spawner, store):
    cached = make_result('task:a.mp3', mood_happy=0.9)
    store.seed(cached)
    dispatcher = make_dispatcher(spawner)

    future = dispatcher.submit('a.mp3')

    assert future.done()
    assert future.result() == cached
    assert spawner.spawned == []
    assert dispatcher.stats().dispatched == 0


def test_expired_cache_entry_is_recomputed(make_dispatcher, spawner, store):
    store.seed(make_result('task:a.mp3', mood_happy=0.9), age_seconds=7200)
    dispatcher = make_dispatcher(spawner)

    result = dispatcher.submit('a.mp3').result(timeout=5)

    assert spawner.spawned == ['a.mp3']
    assert result.per_model_score['mood_happy'] == pytest.approx(0.3)


def test_completed_job_is_served_from_cache_afterwards(make_dispatcher, spawner):
    dispatcher = make_dispatcher(spawner)

    first = dispatcher.submit('a.mp3').result(timeout=5)
    assert wait_until(lambda: dispatcher.stats().inflight == 0)
    second = dispatcher.submit('a.mp3').result(timeout=5)

    assert second == first
    assert spawner.spawned == ['a.mp3']


def test_storage_write_is_retried(make_dispatcher, spawner):
    flaky = InMemoryStore(save_failures=2)
    dispatcher = make_dispatcher(spawner, storage_retries=3, result_store=flaky)

    result = dispatcher.submit('a.mp3').result(timeout=5)

    assert flaky.save_attempts == 3
    assert flaky.results['task:a.mp3'] == result


def test_storage_failure_keeps_computed_result(make_dispatcher, spawner):
    broken = InMemoryStore(save_failures=10)
    dispatcher = make_dispatcher(spawner, storage_retries=3, result_store=broken)

    error = dispatcher.submit('a.mp3').exception(timeout=5)

    assert isinstance(error, StorageFailure)
    assert isinstance(error.result, WorkResult)
    assert broken.save_attempts == 3
    assert wait_until(lambda: dispatcher.stats().released == 1)
    assert broken.failures[0][1] == JobState.FAILED


def test_twelve_jobs_through_five_slots(make_dispatcher):
    refs = [f'track-{i:02d}.mp3' for i in range(12)]
    spawner = FakeSpawner()
    spawner.gates = {ref: threading.Event() for ref in refs}
    dispatcher = make_dispatcher(spawner, max_workers=5)

    try:
        futures = [dispatcher.submit(ref) for ref in refs]
        assert wait_until(lambda: len(spawner.spawned) == 5)
        stats = dispatcher.stats()
        assert stats.active == 5
        assert stats.pending == 7

        for done, ref in enumerate(refs, start=1):
            spawner.gates[ref].set()
            futures[done - 1].result(timeout=5)
            expected = min(5, len(refs) - done)
            assert wait_until(lambda: dispatcher.stats().released == done
                              and dispatcher.stats().active == expected)
            stats = dispatcher.stats()
            assert stats.active == expected
            assert stats.pending == max(0, len(refs) - done - 5)
            assert wait_until(lambda: spawner.spawned == refs[:min(len(refs), done + 5)])
    finally:
        for event in spawner.gates.values():
            event.set()

    assert [f.result(timeout=5).task_key for f in futures] == [f'task:{ref}' for ref in refs]
    assert spawner.peak == 5
    stats = dispatcher.stats()
    assert stats.peak_active == 5
    assert stats.dispatched == 12
    assert stats.released == 12


def test_wait_for_capacity(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner, max_workers=1)

    assert dispatcher.wait_for_capacity(0.01)
    future = dispatcher.submit('a.mp3')
    assert not dispatcher.wait_for_capacity(0.05)

    gate.set()
    future.result(timeout=5)
    assert dispatcher.wait_for_capacity(5)


def test_shutdown_drains_and_rejects_new_work(make_dispatcher, gate):
    spawner = FakeSpawner(gate)
    dispatcher = make_dispatcher(spawner, max_workers=1)
    futures = [dispatcher.submit('a.mp3'), dispatcher.submit('b.mp3')]

    assert not dispatcher.shutdown(wait=True, timeout=0.05)
    with pytest.raises(RuntimeError):
        dispatcher.submit('c.mp3')

    gate.set()
    assert dispatcher.shutdown(wait=True, timeout=5)
    assert all(future.done() for future in futures)
    assert spawner.spawned == ['a.mp3', 'b.mp3']


def test_max_workers_must_be_positive(make_dispatcher, spawner):
    with pytest.raises(ValueError):
        make_dispatcher(spawner, max_workers=0)
