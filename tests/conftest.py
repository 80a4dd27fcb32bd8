"""Shared fakes for bskysweep tests."""

from __future__ import annotations

from typing import Any

import pytest

from bsky_api import Record, RecordPage


class FakeClock:
    """Epoch clock whose sleep() just advances time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeApi:
    """Scripted stand-in for BskyClient.

    ``pages`` are returned in order by list_records; each item of
    ``write_results`` is either None (success) or an exception to raise.
    """

    def __init__(
        self,
        pages: list[RecordPage] | None = None,
        write_results: list[Exception | None] | None = None,
    ) -> None:
        self.pages = list(pages or [])
        self.write_results = list(write_results or [])
        self.list_calls: list[dict[str, Any]] = []
        self.write_calls: list[list[dict[str, Any]]] = []

    def list_records(self, **kwargs: Any) -> RecordPage:
        self.list_calls.append(kwargs)
        result = self.pages.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def apply_writes(self, *, repo: str, writes: list[dict[str, Any]]) -> None:
        self.write_calls.append(writes)
        if self.write_results:
            result = self.write_results.pop(0)
            if result is not None:
                raise result


def post_uri(rkey: str, did: str = "did:plc:alice") -> str:
    return f"at://{did}/app.bsky.feed.post/{rkey}"


def plain_post(rkey: str, text: str = "hello") -> Record:
    return Record(uri=post_uri(rkey), value={"$type": "app.bsky.feed.post", "text": text})


def facet_post(rkey: str, link: str) -> Record:
    return Record(
        uri=post_uri(rkey),
        value={
            "text": "read this",
            "facets": [
                {
                    "index": {"byteStart": 0, "byteEnd": 9},
                    "features": [{"$type": "app.bsky.richtext.facet#link", "uri": link}],
                }
            ],
        },
    )


def embed_post(rkey: str, link: str) -> Record:
    return Record(
        uri=post_uri(rkey),
        value={"text": "", "embed": {"$type": "app.bsky.embed.external", "external": {"uri": link, "title": "t"}}},
    )


def entity_post(rkey: str, link: str) -> Record:
    return Record(
        uri=post_uri(rkey),
        value={"text": link, "entities": [{"type": "link", "value": link, "index": {"start": 0, "end": 5}}]},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
