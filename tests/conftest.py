"""
Shared pytest fixtures.

FakeModule and FakeChannel stand in for real check modules and the ufw
management channel, so the plan/guard/executor tests never touch the host.
"""
import pytest

from vpsaudit import system_info
from vpsaudit.checks.base import BaseModule, Finding, FixResult
from vpsaudit.fixer.guard import ManagementChannel


@pytest.fixture(autouse=True)
def clear_lru_caches():
    """Prevent lru_cache state from leaking between tests."""
    yield
    system_info.get_system_info.cache_clear()
    system_info.get_ssh_port.cache_clear()


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeModule(BaseModule):
    """
    Module whose findings and fix results are supplied by the test.

    results maps fix_id → FixResult (or a callable returning one). A fix_id
    declared in fixes but absent from results has no handler (manual-only).
    """

    def __init__(self, name="fake", fixes=(), findings=(), results=None, revert_result=None):
        self.name = name
        self.title = name.title()
        self.fixes = tuple(fixes)
        self._findings = list(findings)
        self.results = dict(results or {})
        self.revert_result = revert_result or FixResult.success()
        self.applied: list[str] = []
        self.reverted: list[str] = []

    def audit(self):
        return list(self._findings)

    def fix_handlers(self):
        return {fix_id: (lambda fix_id=fix_id: self._apply(fix_id)) for fix_id in self.results}

    def revert_handlers(self):
        return {fix_id: (lambda fix_id=fix_id: self._revert(fix_id)) for fix_id in self.results}

    def _apply(self, fix_id):
        self.applied.append(fix_id)
        result = self.results[fix_id]
        return result() if callable(result) else result

    def _revert(self, fix_id):
        self.reverted.append(fix_id)
        return self.revert_result() if callable(self.revert_result) else self.revert_result


class FakeChannel(ManagementChannel):
    """In-memory firewall: a rule is active exactly while it is present."""

    def __init__(self, rules=(), can_add=True):
        self.rules = set(rules)
        self.can_add = can_add
        self.added = []
        self.removed = []

    def has_rule(self, rule):
        return rule in self.rules

    def add_rule(self, rule):
        if rule in self.rules:
            return True
        if not self.can_add:
            return False
        self.rules.add(rule)
        self.added.append(rule)
        return True

    def remove_rule(self, rule):
        self.rules.discard(rule)
        self.removed.append(rule)
        return True

    def is_active(self, rule):
        return rule in self.rules


def make_finding(**kwargs) -> Finding:
    """Build a minimal failed Finding; kwargs override any field."""
    defaults = dict(
        id="fake.issue",
        module_name="fake",
        severity="medium",
        status="failed",
        title="Something is off",
    )
    defaults.update(kwargs)
    return Finding(**defaults)


@pytest.fixture
def fake_module():
    return FakeModule


@pytest.fixture
def fake_channel():
    return FakeChannel


@pytest.fixture
def finding():
    return make_finding
