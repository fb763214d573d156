# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Interop scenario library and runner.

Every scenario drives a :class:`~crosstest.service.TestServiceClient`, so
the same library validates any binding and any peer.

Usage::

    from crosstest.conformance import run_conformance
    from crosstest.http import HttpChannel
    from crosstest.service import TestServiceClient

    with TestServiceClient(HttpChannel("http://127.0.0.1:8080")) as client:
        suite = run_conformance(client, filter_patterns=["unary.*"])

"""

from crosstest.conformance._runner import (
    DEFAULT_TEST_TIMEOUT,
    ConformanceResult,
    ConformanceSuite,
    list_conformance_tests,
    run_conformance,
)
from crosstest.conformance._scenarios import SCENARIOS, Scenario

__all__ = [
    "DEFAULT_TEST_TIMEOUT",
    "SCENARIOS",
    "ConformanceResult",
    "ConformanceSuite",
    "Scenario",
    "list_conformance_tests",
    "run_conformance",
]
