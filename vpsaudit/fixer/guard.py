"""
Safety guard: danger classification and the lockout protection protocol.

Every fix is classified as one of:
  safe              : cannot deny the operator access
  confirm_required  : irreversible or service-impacting; needs an explicit ack
  lockout_protected : may sever the operator's management channel

lockout_protected steps run inside protect():
  1. pre-protect : make sure the SSH port (and, when known, the operator's
                    address) is allowed. Additive and idempotent.
  2. apply       : the caller's fix callable
  3. post-verify : every rule from step 1 is still present and active;
                    otherwise LockoutVerificationFailure is raised and the
                    caller rolls the step back
  4. cleanup     : temporary rules that were not there before are removed
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable

from vpsaudit.checks.base import DANGER_RANK, DangerClass, FixResult, FixSpec
from vpsaudit.errors import LockoutVerificationFailure, PermissionDeniedError

logger = logging.getLogger("vpsaudit.fixer.guard")


# ── Classification ────────────────────────────────────────────────────────────

# Core allow-list. A module may declare a stricter class but never a laxer one.
CORE_CLASSIFICATION: dict[str, DangerClass] = {
    "ufw.enable":               "lockout_protected",
    "ufw.set_default_deny":     "lockout_protected",
    "ufw.install":              "confirm_required",
    "update.apply_security":    "confirm_required",
    "update.install_unattended": "confirm_required",
    "baseline.disable_unused":  "confirm_required",
    "baseline.enable_apparmor": "confirm_required",
}


def classify(spec: FixSpec, overrides: dict[str, str] | None = None) -> DangerClass:
    """
    Return the effective danger class for spec.

    The strictest of the module's declaration, the core allow-list and the
    config override wins. Overrides cannot lower a class.
    """
    candidates: list[str] = [spec.danger, CORE_CLASSIFICATION.get(spec.fix_id, "safe")]

    if overrides and spec.fix_id in overrides:
        wanted = overrides[spec.fix_id]
        if wanted in DANGER_RANK:
            candidates.append(wanted)
        else:
            logger.warning("Ignoring unknown danger class %r for %s", wanted, spec.fix_id)

    return max(candidates, key=lambda c: DANGER_RANK[c])  # type: ignore[return-value]


# ── Management channel ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AllowRule:
    port: int | None = None
    source: str | None = None
    proto: str = "tcp"
    # Temporary rules are removed after a verified apply if they were added by us.
    temporary: bool = False

    def describe(self) -> str:
        if self.source and self.port:
            return f"allow from {self.source} to port {self.port}/{self.proto}"
        if self.source:
            return f"allow from {self.source}"
        return f"allow {self.port}/{self.proto}"


class ManagementChannel(ABC):
    """Firewall abstraction the guard uses to keep the operator's access open."""

    @abstractmethod
    def has_rule(self, rule: AllowRule) -> bool:
        """Return True if rule is configured (whether or not the firewall is active)."""

    @abstractmethod
    def add_rule(self, rule: AllowRule) -> bool:
        """Add rule. Must be a no-op if it already exists. Returns success."""

    @abstractmethod
    def remove_rule(self, rule: AllowRule) -> bool:
        """Remove rule. Returns success."""

    @abstractmethod
    def is_active(self, rule: AllowRule) -> bool:
        """Return True if rule is present and would admit traffic right now."""


# ── Guard ─────────────────────────────────────────────────────────────────────

@dataclass
class Protection:
    rules: list[AllowRule] = field(default_factory=list)
    synthetic: list[AllowRule] = field(default_factory=list)


class SafetyGuard:
    """Policy layer wrapped around plan execution."""

    def __init__(
        self,
        channel: ManagementChannel | None,
        management_port: int,
        operator_address: str | None = None,
    ) -> None:
        self.channel = channel
        self.management_port = management_port
        self.operator_address = operator_address

    # ── Acknowledgment ────────────────────────────────────────────────────────

    def require_ack(self, fix_id: str, danger: DangerClass, acks: Iterable[str]) -> None:
        """Raise PermissionDeniedError if a confirm_required fix is not acknowledged."""
        if danger == "confirm_required" and fix_id not in set(acks):
            raise PermissionDeniedError(fix_id)

    # ── Lockout protocol ──────────────────────────────────────────────────────

    def management_rules(self) -> list[AllowRule]:
        rules = [AllowRule(port=self.management_port)]
        if self.operator_address:
            rules.append(AllowRule(source=self.operator_address, temporary=True))
        return rules

    def pre_protect(self) -> Protection:
        """
        Ensure every management rule exists. Idempotent.

        Raises LockoutVerificationFailure (nothing applied yet) if there is
        no channel or a rule cannot be added.
        """
        if self.channel is None:
            raise LockoutVerificationFailure(
                "No firewall management channel available to protect SSH access"
            )

        state = Protection()
        for rule in self.management_rules():
            if self.channel.has_rule(rule):
                state.rules.append(rule)
                continue
            if not self.channel.add_rule(rule):
                raise LockoutVerificationFailure(f"Could not add protective rule: {rule.describe()}")
            logger.info("Added protective rule: %s", rule.describe())
            state.rules.append(rule)
            state.synthetic.append(rule)
        return state

    def verify(self, state: Protection) -> bool:
        """Re-check that every protected rule is still present and active."""
        if self.channel is None:
            return False
        for rule in state.rules:
            if not self.channel.is_active(rule):
                logger.error("Post-verify failed: %s is not active", rule.describe())
                return False
        return True

    def cleanup(self, state: Protection) -> None:
        """Remove temporary rules we added. Failures are logged, not raised."""
        if self.channel is None:
            return
        for rule in state.synthetic:
            if not rule.temporary:
                continue
            if self.channel.remove_rule(rule):
                logger.info("Removed temporary rule: %s", rule.describe())
            else:
                logger.warning("Could not remove temporary rule: %s", rule.describe())

    def protect(self, fix_id: str, apply: Callable[[], FixResult]) -> FixResult:
        """
        Run apply() inside the four-phase protocol.

        Returns apply()'s result when it did not succeed (protective rules
        are left in place). Raises LockoutVerificationFailure with
        applied=True when the fix succeeded but access could not be
        verified afterwards; the caller must roll back and halt.
        """
        state = self.pre_protect()

        result = apply()
        if not result.ok:
            return result

        if not self.verify(state):
            raise LockoutVerificationFailure(
                f"Management access could not be verified after {fix_id}",
                applied=True,
            )

        self.cleanup(state)
        return result
