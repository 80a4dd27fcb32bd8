"""Scan a Bluesky repo for posts that link a domain and delete them in quota-safe batches."""

from __future__ import annotations

import math
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from bsky_api import (
    DELETE_WRITE_TYPE,
    POST_COLLECTION,
    CallLimiter,
    RateLimited,
    XrpcError,
    parse_ratelimit_reset,
)

LINK_FACET_TYPE = "app.bsky.richtext.facet#link"
EXTERNAL_EMBED_TYPE = "app.bsky.embed.external"
HOUR_SECONDS = 3600.0


class ConfigurationError(ValueError):
    pass


class ScanFailure(RuntimeError):
    """A page fetch failed; the intent list would be incomplete, so the scan is unusable."""

    def __init__(self, message: str, *, page: int, cursor: str | None) -> None:
        super().__init__(message)
        self.page = page
        self.cursor = cursor


class WriteFailure(RuntimeError):
    """A batch write failed in a way that is not retried."""

    def __init__(self, message: str, *, unit_number: int, status: int | None = None) -> None:
        super().__init__(message)
        self.unit_number = unit_number
        self.status = status


@dataclass(frozen=True)
class DeleteIntent:
    record_id: str
    collection: str
    uri: str = ""

    @classmethod
    def from_uri(cls, uri: str, collection: str = POST_COLLECTION) -> DeleteIntent:
        return cls(record_id=record_id_from_uri(uri), collection=collection, uri=uri)

    def to_write(self) -> dict[str, str]:
        return {"$type": DELETE_WRITE_TYPE, "collection": self.collection, "rkey": self.record_id}


@dataclass(frozen=True)
class WorkUnit:
    number: int
    intents: tuple[DeleteIntent, ...]

    def __len__(self) -> int:
        return len(self.intents)


@dataclass
class QuotaWindow:
    window_start: float
    used: int = 0


class DispatchStatus(Enum):
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"


@dataclass
class DispatchOutcome:
    unit: WorkUnit
    status: DispatchStatus
    attempts: int = 1
    rate_limit_waits: list[float] = field(default_factory=list)
    error: WriteFailure | None = None

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error else None


class SweepStatus(Enum):
    NOTHING_TO_DO = "nothing_to_do"
    DRY_RUN = "dry_run"
    COMPLETED = "completed"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


@dataclass
class SweepReport:
    target_domain: str
    status: SweepStatus = SweepStatus.NOTHING_TO_DO
    intents_total: int = 0
    units_total: int = 0
    outcomes: list[DispatchOutcome] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        return sum(len(o.unit) for o in self.outcomes if o.status is DispatchStatus.SUCCEEDED)

    @property
    def abandoned(self) -> int:
        if self.status in (SweepStatus.NOTHING_TO_DO, SweepStatus.DRY_RUN):
            return 0
        return self.intents_total - self.deleted

    @property
    def units_not_attempted(self) -> int:
        return self.units_total - len(self.outcomes)

    @property
    def failed_outcome(self) -> DispatchOutcome | None:
        for o in self.outcomes:
            if o.status is DispatchStatus.ABORTED:
                return o
        return None


@dataclass
class SweepConfig:
    target_domain: str
    batch_size: int = 200
    max_deletes_per_hour: int = 5000
    safety_margin: int = 100
    inter_batch_delay_ms: int = 5000
    verbose: bool = True
    rate_limit_wait: float = 60.0
    rate_limit_retries: int = 0
    dry_run: bool = False
    collection: str = POST_COLLECTION
    page_size: int = 100

    def validate(self) -> None:
        if not self.target_domain or not self.target_domain.strip():
            raise ConfigurationError("target domain is required")
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch size must be > 0 (got {self.batch_size})")
        if self.max_deletes_per_hour <= 0:
            raise ConfigurationError(f"max deletes per hour must be > 0 (got {self.max_deletes_per_hour})")
        if self.safety_margin < 0 or self.safety_margin >= self.max_deletes_per_hour:
            raise ConfigurationError(
                f"safety margin must be in [0, {self.max_deletes_per_hour}) (got {self.safety_margin})"
            )
        if self.inter_batch_delay_ms < 0:
            raise ConfigurationError("inter-batch delay must be >= 0")
        if self.rate_limit_wait <= 0:
            raise ConfigurationError("rate limit fallback wait must be > 0")
        if self.rate_limit_retries < 0:
            raise ConfigurationError("rate limit retries must be >= 0 (0 = unlimited)")
        if not 1 <= self.page_size <= 100:
            raise ConfigurationError("page size must be within 1..100")


def record_id_from_uri(uri: str) -> str:
    return uri[uri.rfind("/") + 1 :]


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _contains(text: Any, target_domain: str) -> bool:
    return isinstance(text, str) and target_domain in text


def match_reason(value: Any, target_domain: str) -> tuple[bool, str]:
    """Check a post record for a link to ``target_domain``.

    Evidence is checked in order: rich-text link facets, an external embed,
    then legacy link entities. Plain substring match, case-sensitive.
    """
    if not isinstance(value, dict):
        return False, "no record value"

    for facet in _as_list(value.get("facets")):
        if not isinstance(facet, dict):
            continue
        for feature in _as_list(facet.get("features")):
            if not isinstance(feature, dict) or feature.get("$type") != LINK_FACET_TYPE:
                continue
            if _contains(feature.get("uri"), target_domain):
                return True, f"facet link: {feature['uri']}"

    embed = value.get("embed")
    if isinstance(embed, dict) and embed.get("$type") == EXTERNAL_EMBED_TYPE:
        external = embed.get("external") if isinstance(embed.get("external"), dict) else {}
        if _contains(external.get("uri"), target_domain):
            return True, f"embed: {external['uri']}"

    for entity in _as_list(value.get("entities")):
        if not isinstance(entity, dict) or entity.get("type") != "link":
            continue
        if _contains(entity.get("value"), target_domain):
            return True, f"entities link: {entity['value']}"

    return False, "no match"


def matches(value: Any, target_domain: str) -> bool:
    return match_reason(value, target_domain)[0]


def _limited(limiter: CallLimiter | None, fn: Callable[..., Any], **kwargs: Any) -> Any:
    if limiter is None:
        return fn(**kwargs)
    return limiter.call(fn, **kwargs)


def scan_records(
    api: Any,
    repo: str,
    target_domain: str,
    *,
    limiter: CallLimiter | None = None,
    collection: str = POST_COLLECTION,
    page_size: int = 100,
    verbose: bool = True,
) -> list[DeleteIntent]:
    """Walk the whole collection oldest-first and return delete intents for every match.

    The list is complete or the call raises ScanFailure; no partial result is returned.
    """
    intents: list[DeleteIntent] = []
    cursor: str | None = None
    page = 0

    while True:
        page += 1
        print(f"[INFO] Fetching records (cursor: {cursor or 'none'})...")
        try:
            result = _limited(
                limiter,
                api.list_records,
                repo=repo,
                collection=collection,
                limit=page_size,
                cursor=cursor,
                reverse=True,
            )
        except XrpcError as exc:
            raise ScanFailure(f"Failed to load records page {page}: {exc}", page=page, cursor=cursor) from exc

        print(f"[INFO] Processing page #{page}, {len(result.records)} records fetched")
        for record in result.records:
            if verbose:
                print(f"[INFO] Checking record URI: {record.uri}")
            found, reason = match_reason(record.value, target_domain)
            if not found:
                continue
            if verbose:
                print(f"[INFO] Found target domain in {reason}")
            intents.append(DeleteIntent.from_uri(record.uri, collection))

        if not result.cursor:
            break
        cursor = result.cursor

    return intents


def partition(intents: Sequence[DeleteIntent], batch_size: int) -> list[WorkUnit]:
    if batch_size <= 0:
        raise ConfigurationError(f"batch size must be > 0 (got {batch_size})")
    return [
        WorkUnit(number=n, intents=tuple(intents[start : start + batch_size]))
        for n, start in enumerate(range(0, len(intents), batch_size), start=1)
    ]


class QuotaGovernor:
    """Client-local rolling-hour delete budget.

    Never talks to the server; the 429 handling in BatchDispatcher covers
    whatever this estimate gets wrong.
    """

    def __init__(
        self,
        max_per_hour: int,
        safety_margin: int,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_per_hour <= 0 or safety_margin < 0 or max_per_hour - safety_margin <= 0:
            raise ConfigurationError(
                f"invalid quota: max_per_hour={max_per_hour}, safety_margin={safety_margin}"
            )
        self.max_per_hour = max_per_hour
        self.safety_margin = safety_margin
        self._clock = clock
        self._sleep = sleep
        self.window = QuotaWindow(window_start=clock())

    @property
    def budget(self) -> int:
        return self.max_per_hour - self.safety_margin

    def before_dispatch(self, n: int) -> float:
        """Block until a unit of ``n`` deletes fits the budget. Returns seconds waited."""
        if self.window.used + n <= self.budget:
            return 0.0

        waited = 0.0
        elapsed = self._clock() - self.window.window_start
        if elapsed < HOUR_SECONDS:
            waited = HOUR_SECONDS - elapsed
            print(f"[INFO] Approaching hourly limit. Waiting {math.ceil(waited / 60)} minutes to reset.")
            self._sleep(waited)
        self.window = QuotaWindow(window_start=self._clock())
        return waited

    def record(self, n: int) -> None:
        self.window.used += n


class BatchDispatcher:
    def __init__(
        self,
        api: Any,
        repo: str,
        governor: QuotaGovernor,
        *,
        limiter: CallLimiter | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        default_wait: float = 60.0,
        max_rate_limit_retries: int = 0,
    ) -> None:
        self.api = api
        self.repo = repo
        self.governor = governor
        self.limiter = limiter
        self._clock = clock
        self._sleep = sleep
        self.default_wait = default_wait
        self.max_rate_limit_retries = max(0, max_rate_limit_retries)

    def rate_limit_wait(self, exc: XrpcError) -> float:
        reset = parse_ratelimit_reset(exc.headers)
        if reset is not None:
            wait = reset - self._clock()
            if wait > 0:
                return wait
        return self.default_wait

    def dispatch(self, unit: WorkUnit) -> DispatchOutcome:
        """Submit one unit as a single applyWrites call, retrying on 429 only."""
        writes = [intent.to_write() for intent in unit.intents]
        outcome = DispatchOutcome(unit=unit, status=DispatchStatus.ABORTED, attempts=0)

        while True:
            outcome.attempts += 1
            try:
                _limited(self.limiter, self.api.apply_writes, repo=self.repo, writes=writes)
            except RateLimited as exc:
                retries = outcome.attempts - 1
                if self.max_rate_limit_retries and retries >= self.max_rate_limit_retries:
                    outcome.error = WriteFailure(
                        f"Batch #{unit.number}: HTTP 429 retries exceeded ({self.max_rate_limit_retries})",
                        unit_number=unit.number,
                        status=exc.status,
                    )
                    return outcome
                wait = self.rate_limit_wait(exc)
                print("[WARN] Rate limit exceeded, checking headers to wait until reset...")
                print(f"[INFO] Waiting {wait:.0f} seconds before retrying...")
                self._sleep(wait)
                outcome.rate_limit_waits.append(wait)
                print(f"[INFO] Retrying batch #{unit.number}...")
                continue
            except XrpcError as exc:
                outcome.error = WriteFailure(
                    f"Batch #{unit.number}: {exc}", unit_number=unit.number, status=exc.status
                )
                return outcome

            self.governor.record(len(unit))
            outcome.status = DispatchStatus.SUCCEEDED
            return outcome


def run_sweep(
    api: Any,
    repo: str,
    config: SweepConfig,
    *,
    limiter: CallLimiter | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepReport:
    config.validate()
    report = SweepReport(target_domain=config.target_domain)

    try:
        intents = scan_records(
            api,
            repo,
            config.target_domain,
            limiter=limiter,
            collection=config.collection,
            page_size=config.page_size,
            verbose=config.verbose,
        )
    except KeyboardInterrupt:
        print("[WARN] Interrupted during scan. Nothing was deleted.")
        report.status = SweepStatus.INTERRUPTED
        return report
    report.intents_total = len(intents)
    print(f"[INFO] Found {len(intents)} posts containing '{config.target_domain}'")
    if not intents:
        print("[INFO] No posts to delete.")
        report.status = SweepStatus.NOTHING_TO_DO
        return report

    units = partition(intents, config.batch_size)
    report.units_total = len(units)
    print(f"[INFO] Deletion can be done in {len(units)} batched operations")

    if config.dry_run:
        for intent in intents:
            print(f"[CANDIDATE] {intent.uri or intent.record_id}")
        report.status = SweepStatus.DRY_RUN
        return report

    governor = QuotaGovernor(config.max_deletes_per_hour, config.safety_margin, clock=clock, sleep=sleep)
    dispatcher = BatchDispatcher(
        api,
        repo,
        governor,
        limiter=limiter,
        clock=clock,
        sleep=sleep,
        default_wait=config.rate_limit_wait,
        max_rate_limit_retries=config.rate_limit_retries,
    )
    delay = config.inter_batch_delay_ms / 1000.0

    try:
        for unit in units:
            governor.before_dispatch(len(unit))
            print(f"[INFO] Deleting batch #{unit.number} with {len(unit)} posts...")
            outcome = dispatcher.dispatch(unit)
            report.outcomes.append(outcome)
            if outcome.status is DispatchStatus.ABORTED:
                print(f"[ERROR] Error performing batch #{unit.number}: {outcome.reason}", file=sys.stderr)
                report.status = SweepStatus.ABORTED
                return report
            print(f"[INFO] Batch operation #{unit.number} completed")
            if unit.number < len(units) and delay > 0:
                sleep(delay)
    except KeyboardInterrupt:
        print("[WARN] Interrupted. Stopping before the next batch.")
        report.status = SweepStatus.INTERRUPTED
        return report

    report.status = SweepStatus.COMPLETED
    return report
