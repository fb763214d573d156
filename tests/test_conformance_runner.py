# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the scenario library and runner."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import pytest

import crosstest.conformance._runner as runner_module
from crosstest.conformance import (
    SCENARIOS,
    ConformanceResult,
    Scenario,
    list_conformance_tests,
    run_conformance,
)
from crosstest.conformance._runner import _matches_filter, _run_with_timeout, _TestTimeoutError
from crosstest.errors import Code, RpcError
from crosstest.rpc import CallContext, LocalChannel
from crosstest.service import (
    EMPTY_CALL,
    FULL_DUPLEX_CALL,
    ReferenceServer,
    SimpleRequest,
    SimpleResponse,
    TestServiceClient,
)

ClientFactory = Callable[[], TestServiceClient]


def _local_client(handler: object | None = None) -> TestServiceClient:
    return TestServiceClient(LocalChannel(handler or ReferenceServer()))


class _WrongCodeServer(ReferenceServer):
    """Non-conforming server: fails with the wrong code."""

    def fail_unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        raise RpcError(Code.INTERNAL, "wrong")


class TestScenarioLibrary:
    """The registered scenario set."""

    def test_names_unique(self) -> None:
        """Every scenario has a distinct category.name."""
        names = [s.full_name for s in SCENARIOS]
        assert len(names) == len(set(names))

    def test_every_scenario_declares_methods(self) -> None:
        """Scenarios name the methods they need, so bindings can skip them."""
        assert all(s.requires for s in SCENARIOS)

    def test_list_sorted(self) -> None:
        """Listing returns sorted names."""
        names = list_conformance_tests()
        assert names == sorted(names)
        assert "unary.empty" in names
        assert "full_duplex.ping_pong" in names

    def test_list_filtered(self) -> None:
        """Patterns match the full name or the category alone."""
        assert list_conformance_tests(["unary"]) == list_conformance_tests(["unary.*"])
        assert list_conformance_tests(["status.zero*"]) == ["status.zero_code_is_not_error"]

    def test_matches_filter(self) -> None:
        """Any matching pattern selects the scenario."""
        assert _matches_filter("errors.negative_response_size", ["unary*", "errors.*"])
        assert not _matches_filter("errors.negative_response_size", ["unary*"])


class TestRunAgainstReferenceServer:
    """The whole library passes against the reference server on every binding."""

    def test_all_scenarios(self, make_client: ClientFactory) -> None:
        """Nothing fails; only what the binding cannot carry is skipped."""
        client = make_client()
        suite = run_conformance(client, timeout=30.0)
        failures = [(r.name, r.error) for r in suite.results if not r.passed and not r.skipped]
        assert failures == []
        assert suite.success
        expected_skips = sum(1 for s in SCENARIOS if s.unsupported(client))
        assert suite.skipped == expected_skips
        assert suite.total == len(SCENARIOS)
        assert suite.passed + suite.skipped == suite.total

    def test_http_skips_full_duplex(self, http_base_url: str) -> None:
        """Over HTTP/1.1 exactly the full-duplex scenarios are skipped."""
        from crosstest.http import HttpChannel

        with TestServiceClient(HttpChannel(http_base_url)) as client:
            suite = run_conformance(client)
        skipped = {r.name for r in suite.results if r.skipped}
        assert skipped == {s.full_name for s in SCENARIOS if FULL_DUPLEX_CALL in s.requires}
        assert all(r.error and "FullDuplexCall" in r.error for r in suite.results if r.skipped)
        assert suite.success


class TestRunner:
    """Runner behavior independent of any binding."""

    def test_detects_non_conforming_server(self) -> None:
        """A wrong status code fails that scenario and only that one."""
        with _local_client(_WrongCodeServer()) as client:
            suite = run_conformance(client)
        failed = [r for r in suite.results if not r.passed and not r.skipped]
        assert [r.name for r in failed] == ["errors.fail_with_non_ascii_error"]
        assert failed[0].error is not None
        assert "RESOURCE_EXHAUSTED" in failed[0].error
        assert not suite.success

    def test_filter(self) -> None:
        """Only matching scenarios run."""
        with _local_client() as client:
            suite = run_conformance(client, filter_patterns=["status*"])
        assert suite.total == len(list_conformance_tests(["status*"]))
        assert all(r.category == "status" for r in suite.results)

    def test_progress_callback(self) -> None:
        """The callback sees every result in order."""
        seen: list[ConformanceResult] = []
        with _local_client() as client:
            suite = run_conformance(client, filter_patterns=["unary*"], on_progress=seen.append)
        assert seen == suite.results

    def test_timeout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A hung scenario fails with a timeout and the run continues."""

        def _hang(client: TestServiceClient) -> None:
            time.sleep(5)

        def _ok(client: TestServiceClient) -> None:
            client.empty_call()

        monkeypatch.setattr(
            runner_module,
            "SCENARIOS",
            [Scenario("custom", "hang", _hang, (EMPTY_CALL,)), Scenario("custom", "ok", _ok, (EMPTY_CALL,))],
        )
        with _local_client() as client:
            suite = run_conformance(client, timeout=0.1)
        hang, ok = suite.results
        assert not hang.passed
        assert hang.error is not None and "timeout" in hang.error
        assert ok.passed
        assert suite.failed == 1

    def test_unexpected_exception(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Non-assertion errors are reported with their type."""

        def _boom(client: TestServiceClient) -> None:
            raise ZeroDivisionError("nope")

        monkeypatch.setattr(runner_module, "SCENARIOS", [Scenario("custom", "boom", _boom, (EMPTY_CALL,))])
        with _local_client() as client:
            (result,) = run_conformance(client).results
        assert result.error == "ZeroDivisionError: nope"

    @pytest.mark.parametrize("timeout", [0.0, 5.0])
    def test_system_exit_fails_scenario(self, monkeypatch: pytest.MonkeyPatch, timeout: float) -> None:
        """A scenario calling sys.exit fails on its own and later scenarios still run."""

        def _exit(client: TestServiceClient) -> None:
            raise SystemExit(3)

        def _ok(client: TestServiceClient) -> None:
            client.empty_call()

        monkeypatch.setattr(
            runner_module,
            "SCENARIOS",
            [Scenario("custom", "exit", _exit, (EMPTY_CALL,)), Scenario("custom", "ok", _ok, (EMPTY_CALL,))],
        )
        with _local_client() as client:
            suite = run_conformance(client, timeout=timeout)
        exited, ok = suite.results
        assert not exited.passed
        assert exited.error == "SystemExit: 3"
        assert ok.passed

    def test_keyboard_interrupt_stops_run(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Ctrl-C inside a scenario aborts the whole run."""

        def _interrupt(client: TestServiceClient) -> None:
            raise KeyboardInterrupt

        monkeypatch.setattr(runner_module, "SCENARIOS", [Scenario("custom", "int", _interrupt, (EMPTY_CALL,))])
        with _local_client() as client, pytest.raises(KeyboardInterrupt):
            run_conformance(client, timeout=0)

    def test_run_with_timeout_propagates(self) -> None:
        """Exceptions raised on the scenario thread reach the caller."""
        with pytest.raises(KeyError):
            _run_with_timeout(lambda: {}["missing"], 1.0)
        with pytest.raises(_TestTimeoutError):
            _run_with_timeout(lambda: time.sleep(1), 0.05)

    def test_logs_results(self, caplog: pytest.LogCaptureFixture) -> None:
        """One record per scenario on the crosstest.conformance logger."""
        with caplog.at_level(logging.INFO, logger="crosstest.conformance"), _local_client() as client:
            suite = run_conformance(client, filter_patterns=["unary*"])
        records = [r for r in caplog.records if r.name == "crosstest.conformance"]
        assert len(records) == suite.total
        assert all(r.getMessage().startswith("PASS ") for r in records)
