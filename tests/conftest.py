"""Shared fixtures for plan-guard tests."""

from __future__ import annotations

import copy
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from plan_guard.sdk.client import PlanGuard


class MockClock:
    """A controllable clock for month-key dependent behavior."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        self._now += timedelta(**kwargs)

    def set(self, when: datetime) -> None:
        self._now = when


MEMBERSHIPS: dict[str, dict[str, Any]] = {
    "owner-1": {
        "organization_id": "acme",
        "organization_role": "owner",
        "teams": {"sales": {"role": "employee"}},
    },
    "mgr-1": {
        "organizationId": "acme",
        "organizationRole": "admin",
        "teams": {"sales": {"role": "manager"}, "support": {"role": "employee"}},
    },
    "lead-1": {
        "organization_id": "acme",
        "organization_role": "member",
        "teams": {"sales": {"role": "team_lead"}},
    },
    "emp-1": {
        "organization_id": "acme",
        "organization_role": "member",
        "teams": {"sales": {"role": "employee"}},
    },
    "emp-export": {
        "enterprise": {
            "organizationId": "acme",
            "organizationRole": "employee",
            "teams": {
                "sales": {"role": "employee", "permissions": {"canExportTeamData": True}},
            },
        },
    },
}


@pytest.fixture()
def clock() -> MockClock:
    return MockClock()


@pytest.fixture()
def memberships() -> dict[str, dict[str, Any]]:
    return copy.deepcopy(MEMBERSHIPS)


@pytest.fixture()
def guard(memberships: dict[str, dict[str, Any]], clock: MockClock) -> Iterator[PlanGuard]:
    g = PlanGuard(memberships=memberships, _clock=clock)
    yield g
    g.close()
