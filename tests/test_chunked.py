import pytest

from terrainmesh.utils.chunked import (
    iter_as_steps,
    iter_chunks,
    run_chunked,
    run_interleaved,
)


def _counting_stage(total, chunk, log, name):
    done = 0
    for start, end in iter_chunks(total, chunk):
        log.append((name, start, end))
        done += end - start
        yield end / total
    return done


def test_iter_chunks_covers_range():
    assert list(iter_chunks(10, 4)) == [(0, 4), (4, 8), (8, 10)]
    assert list(iter_chunks(0, 4)) == []


def test_iter_chunks_rejects_non_positive_size():
    with pytest.raises(ValueError):
        list(iter_chunks(10, 0))


def test_run_chunked_reports_progress_and_returns_result():
    progress = []
    log = []
    result = run_chunked(_counting_stage(10, 3, log, "a"), progress.append)
    assert result == 10
    assert progress == pytest.approx([0.3, 0.6, 0.9, 1.0])


def test_run_interleaved_alternates_chunks():
    log = []
    events = []
    results = run_interleaved(
        {
            "a": _counting_stage(4, 2, log, "a"),
            "b": _counting_stage(6, 2, log, "b"),
        },
        lambda name, fraction: events.append((name, fraction)),
    )
    assert results == {"a": 4, "b": 6}
    assert [entry[0] for entry in log] == ["a", "b", "a", "b", "b"]
    assert events[-1] == ("b", 1.0)


def test_iter_as_steps_counts_from_offset():
    def outer(log):
        first = yield from iter_as_steps(_counting_stage(4, 2, log, "a"), 0, 5)
        second = yield from iter_as_steps(_counting_stage(3, 1, log, "b"), 2, 5)
        return first + second

    progress = []
    assert run_chunked(outer([]), progress.append) == 7
    assert progress == pytest.approx([0.2, 0.4, 0.6, 0.8, 1.0])
