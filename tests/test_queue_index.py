"""
Tests for QueueIndex
"""

import pytest

from printdispatch.queue_index import QueueIndex


@pytest.fixture
def index():
    return QueueIndex()


def test_append_dedupes_by_id(index, make_job):
    a, b = make_job(job_id="a"), make_job(job_id="b")

    assert index.append("P1", [a, b]) == 2
    assert index.append("P1", [a, b]) == 0
    assert index.length("P1") == 2


def test_shift_is_fifo_and_drops_drained_entry(index, make_job):
    a, b = make_job(job_id="a"), make_job(job_id="b")
    index.append("P1", [a, b])

    assert index.shift("P1").id == "a"
    assert index.shift("P1").id == "b"
    assert index.shift("P1") is None
    assert index.resource_ids() == []
    assert index.watermark("P1") is None


def test_watermark_never_moves_backwards(index, make_job):
    old, new = make_job(job_id="old", offset=1), make_job(job_id="new", offset=10)
    index.append("P1", [new])

    index.append("P1", [old])

    assert index.watermark("P1") == new.created_at


def test_shifted_job_can_be_appended_again(index, make_job):
    a = make_job(job_id="a")
    index.append("P1", [a, make_job(job_id="b")])
    index.shift("P1")

    assert index.append("P1", [a]) == 1
    assert [index.shift("P1").id, index.shift("P1").id] == ["b", "a"]


def test_remove_and_clear(index, make_job):
    index.append("P1", [make_job(job_id="a"), make_job(job_id="b")])
    index.append("P2", [make_job("P2", job_id="c")])

    assert index.remove("P1", "a")
    assert not index.remove("P1", "a")
    assert index.peek("P1").id == "b"

    assert index.clear("P1") == 1
    assert index.is_empty("P1")

    index.clear_all()
    assert index.stats() == {"total_resources": 0, "total_jobs": 0, "per_resource_counts": {}}


def test_stats(index, make_job):
    index.append("P1", [make_job(job_id="a"), make_job(job_id="b")])
    index.append("P2", [make_job("P2", job_id="c")])

    stats = index.stats()
    assert stats["total_resources"] == 2
    assert stats["total_jobs"] == 3
    assert stats["per_resource_counts"] == {"P1": 2, "P2": 1}


def test_append_nothing_leaves_no_entry(index):
    assert index.append("P1", []) == 0
    assert index.resource_ids() == []
