# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Scenario runner.

Runs the registered scenarios against a client, each on its own thread
under a timeout, and collects one result per scenario.  A failing or hung
scenario never stops the run.

Usage::

    from crosstest.conformance import run_conformance
    from crosstest.rpc import LocalChannel
    from crosstest.service import ReferenceServer, TestServiceClient

    suite = run_conformance(TestServiceClient(LocalChannel(ReferenceServer())))
    assert suite.success

"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from crosstest.conformance._scenarios import SCENARIOS, Scenario
from crosstest.errors import RpcError
from crosstest.service._client import TestServiceClient

# Default per-scenario timeout in seconds.
DEFAULT_TEST_TIMEOUT: float = 5.0

_logger = logging.getLogger("crosstest.conformance")


class _TestTimeoutError(Exception):
    """Raised when a scenario exceeds its timeout."""


def _run_with_timeout(fn: Callable[[], None], timeout: float) -> None:
    """Run *fn* on a daemon thread, raising ``_TestTimeoutError`` if it exceeds *timeout* seconds."""
    exc: BaseException | None = None
    finished = threading.Event()

    def _target() -> None:
        nonlocal exc
        try:
            fn()
        except BaseException as e:
            exc = e
        finally:
            finished.set()

    thread = threading.Thread(target=_target, daemon=True, name="crosstest.scenario")
    thread.start()
    if not finished.wait(timeout):
        raise _TestTimeoutError(f"Scenario exceeded {timeout}s timeout")
    if exc is not None:
        raise exc


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConformanceResult:
    """Result of a single scenario."""

    name: str
    category: str
    passed: bool
    duration_ms: float
    error: str | None = None
    skipped: bool = False


@dataclass(frozen=True)
class ConformanceSuite:
    """Aggregate results of a scenario run."""

    results: list[ConformanceResult]
    total: int
    passed: int
    failed: int
    skipped: int
    duration_ms: float

    @property
    def success(self) -> bool:
        """Whether no scenario failed."""
        return self.failed == 0


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _matches_filter(name: str, patterns: list[str]) -> bool:
    """Check if a scenario name matches any of the given glob patterns."""
    return any(fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(name.split(".")[0], pattern) for pattern in patterns)


def _selected(filter_patterns: list[str] | None) -> list[Scenario]:
    if not filter_patterns:
        return list(SCENARIOS)
    return [s for s in SCENARIOS if _matches_filter(s.full_name, filter_patterns)]


def list_conformance_tests(filter_patterns: list[str] | None = None) -> list[str]:
    """Return sorted names of available scenarios, optionally filtered.

    Args:
        filter_patterns: Optional glob patterns to filter scenarios.

    Returns:
        Sorted list of scenario names in ``category.name`` format.

    """
    return sorted(s.full_name for s in _selected(filter_patterns))


def _run_one(scenario: Scenario, client: TestServiceClient, timeout: float) -> ConformanceResult:
    unsupported = scenario.unsupported(client)
    if unsupported:
        names = ", ".join(m.name for m in unsupported)
        return ConformanceResult(
            name=scenario.full_name,
            category=scenario.category,
            passed=False,
            duration_ms=0.0,
            error=f"{client.protocol} channel cannot carry {names}",
            skipped=True,
        )
    start = time.monotonic()
    error: str | None = None
    passed = True
    try:
        if timeout > 0:
            _run_with_timeout(lambda: scenario.fn(client), timeout)
        else:
            scenario.fn(client)
    except _TestTimeoutError as e:
        passed = False
        error = str(e)
    except AssertionError as e:
        passed = False
        error = str(e) if str(e) else "Assertion failed"
    except RpcError as e:
        passed = False
        error = f"RpcError({e.code.name}): {e.message}"
    except KeyboardInterrupt:
        raise
    except BaseException as e:
        # SystemExit and friends from a scenario fail that scenario only.
        passed = False
        error = f"{type(e).__name__}: {e}"
    return ConformanceResult(
        name=scenario.full_name,
        category=scenario.category,
        passed=passed,
        duration_ms=(time.monotonic() - start) * 1000,
        error=error,
    )


def run_conformance(
    client: TestServiceClient,
    *,
    filter_patterns: list[str] | None = None,
    on_progress: Callable[[ConformanceResult], None] | None = None,
    timeout: float = DEFAULT_TEST_TIMEOUT,
) -> ConformanceSuite:
    """Run scenarios against *client* and return results.

    Args:
        client: Test Service client bound to the binding under test.
        filter_patterns: Optional glob patterns to filter which scenarios run.
        on_progress: Optional callback invoked after each scenario completes.
        timeout: Per-scenario timeout in seconds.  Set to ``0`` to disable.

    Returns:
        A ConformanceSuite with all results.

    """
    suite_start = time.monotonic()
    results: list[ConformanceResult] = []

    for scenario in _selected(filter_patterns):
        result = _run_one(scenario, client, timeout)
        if result.skipped:
            _logger.info("SKIP %s: %s", result.name, result.error, extra={"scenario": result.name})
        elif result.passed:
            _logger.info(
                "PASS %s (%.1fms)",
                result.name,
                result.duration_ms,
                extra={"scenario": result.name, "duration_ms": round(result.duration_ms, 2)},
            )
        else:
            _logger.warning(
                "FAIL %s: %s",
                result.name,
                result.error,
                extra={"scenario": result.name, "duration_ms": round(result.duration_ms, 2)},
            )
        results.append(result)
        if on_progress:
            on_progress(result)

    suite_elapsed = (time.monotonic() - suite_start) * 1000
    skipped_count = sum(1 for r in results if r.skipped)
    passed_count = sum(1 for r in results if r.passed)

    return ConformanceSuite(
        results=results,
        total=len(results),
        passed=passed_count,
        failed=len(results) - passed_count - skipped_count,
        skipped=skipped_count,
        duration_ms=suite_elapsed,
    )
