import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from engine.errors import ERROR_TIMEOUT, ExtractionFailed
from engine.extractor import DEFAULT_STRATEGIES, CancelledError
from engine.logging_setup import log_event

logger = logging.getLogger(__name__)

ATTEMPT_OK = "ok"
ATTEMPT_ERROR = "error"


@dataclass
class ExtractionAttempt:
    strategy: str
    started_at: float
    finished_at: Optional[float] = None
    outcome: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @property
    def duration(self):
        if self.finished_at is None:
            return None
        return max(0.0, self.finished_at - self.started_at)

    def to_dict(self):
        return {
            "strategy": self.strategy,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "error_kind": self.error_kind,
            "message": self.message,
        }


@dataclass(frozen=True)
class FallbackResult:
    metadata: object
    strategy: object
    attempts: tuple = field(default_factory=tuple)


class FallbackController:
    """Walks the strategy ladder until one extraction succeeds.

    Retryable kinds move to the next strategy; ``advance_kinds`` (sign-in
    walls) skip ahead to the next identity or credential strategy; every
    other kind is terminal and propagates at once. Attempts are capped by
    count and by a wall-clock budget, and each attempt's timeout is clipped
    to what is left of that budget.
    """

    def __init__(self, extractor, config=None, *, strategies=None, clock=None, wall_clock=None):
        cfg = config or {}
        fallback = cfg.get("fallback") or {}
        self.extractor = extractor
        self.strategies = tuple(strategies or DEFAULT_STRATEGIES)
        self.max_attempts = int(fallback.get("max_attempts", 3))
        self.total_budget = float(fallback.get("total_budget_seconds", 90))
        self.retryable_kinds = frozenset(fallback.get("retryable_kinds") or ())
        self.advance_kinds = frozenset(fallback.get("advance_kinds") or ())
        self.locale = cfg.get("locale") or "en"
        self.clock = clock or time.monotonic
        self.wall_clock = wall_clock or time.time

    def plan(self, url=None):
        return [s for s in self.strategies if self.extractor.strategy_available(s, url)]

    def _next_identity_index(self, ladder, idx):
        for candidate in range(idx + 1, len(ladder)):
            strategy = ladder[candidate]
            if strategy.alternate_identity or strategy.cookies:
                return candidate
        return idx + 1

    def run(self, url, *, cancel_check=None):
        ladder = self.plan(url)
        deadline = self.clock() + self.total_budget
        attempts = []
        last_error = None
        idx = 0
        while idx < len(ladder) and len(attempts) < self.max_attempts:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            if callable(cancel_check) and cancel_check():
                raise CancelledError("extraction cancelled")
            strategy = ladder[idx]
            attempt = ExtractionAttempt(strategy=strategy.name, started_at=self.wall_clock())
            attempts.append(attempt)
            try:
                metadata = self.extractor.extract(
                    url,
                    strategy,
                    timeout=remaining,
                    cancel_check=cancel_check,
                )
            except ExtractionFailed as exc:
                attempt.finished_at = self.wall_clock()
                attempt.outcome = ATTEMPT_ERROR
                attempt.error_kind = exc.kind
                attempt.message = (exc.detail or exc.message)[-500:]
                last_error = exc
                if exc.kind in self.advance_kinds:
                    idx = self._next_identity_index(ladder, idx)
                elif exc.kind in self.retryable_kinds:
                    idx += 1
                else:
                    log_event(
                        logging.WARNING,
                        "fallback_terminal_error",
                        logger=logger,
                        url=url,
                        strategy=strategy.name,
                        kind=exc.kind,
                    )
                    raise exc.with_attempts(attempts, locale=self.locale) from exc
                log_event(
                    logging.INFO,
                    "fallback_advance",
                    logger=logger,
                    url=url,
                    failed_strategy=strategy.name,
                    kind=exc.kind,
                    next_strategy=ladder[idx].name if idx < len(ladder) else None,
                )
                continue
            attempt.finished_at = self.wall_clock()
            attempt.outcome = ATTEMPT_OK
            if len(attempts) > 1:
                log_event(
                    logging.INFO,
                    "fallback_recovered",
                    logger=logger,
                    url=url,
                    strategy=strategy.name,
                    attempts=len(attempts),
                )
            return FallbackResult(metadata=metadata, strategy=strategy, attempts=tuple(attempts))

        if last_error is None:
            last_error = ExtractionFailed(ERROR_TIMEOUT, "extraction budget exhausted before any attempt")
        log_event(
            logging.WARNING,
            "fallback_exhausted",
            logger=logger,
            url=url,
            attempts=len(attempts),
            kind=last_error.kind,
        )
        raise last_error.with_attempts(attempts, locale=self.locale)
