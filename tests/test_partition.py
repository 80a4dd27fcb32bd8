"""Tests for delete intents and the batch partitioner."""

from __future__ import annotations

import math

import pytest

from sweep import ConfigurationError, DeleteIntent, partition, record_id_from_uri


def make_intents(count: int) -> list[DeleteIntent]:
    return [DeleteIntent.from_uri(f"at://did:plc:a/app.bsky.feed.post/r{i}") for i in range(count)]


class TestDeleteIntent:
    def test_record_id_is_last_path_segment(self) -> None:
        assert record_id_from_uri("at://did:plc:abc/app.bsky.feed.post/3kq2xyz") == "3kq2xyz"

    def test_record_id_without_slash(self) -> None:
        assert record_id_from_uri("3kq2xyz") == "3kq2xyz"

    def test_to_write(self) -> None:
        intent = DeleteIntent.from_uri("at://did:plc:abc/app.bsky.feed.post/3kq2xyz")
        assert intent.to_write() == {
            "$type": "com.atproto.repo.applyWrites#delete",
            "collection": "app.bsky.feed.post",
            "rkey": "3kq2xyz",
        }


class TestPartition:
    @pytest.mark.parametrize(("length", "size"), [(0, 200), (1, 200), (200, 200), (201, 200), (450, 200), (7, 3)])
    def test_order_and_size_preserved(self, length: int, size: int) -> None:
        intents = make_intents(length)
        units = partition(intents, size)

        assert len(units) == math.ceil(length / size)
        assert sum(len(u) for u in units) == length
        assert [i for u in units for i in u.intents] == intents
        assert all(len(u) <= size for u in units)

    def test_units_numbered_from_one(self) -> None:
        units = partition(make_intents(5), 2)
        assert [u.number for u in units] == [1, 2, 3]
        assert [len(u) for u in units] == [2, 2, 1]

    def test_empty_list_gives_no_units(self) -> None:
        assert partition([], 200) == []

    @pytest.mark.parametrize("size", [0, -1])
    def test_batch_size_must_be_positive(self, size: int) -> None:
        with pytest.raises(ConfigurationError):
            partition(make_intents(3), size)
