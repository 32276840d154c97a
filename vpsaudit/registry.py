"""
Finding and module registries, plus the concurrent audit runner.

Registry       : ordered id → Finding map for one audit run. Upsert
                  semantics: a repeated id overwrites the earlier entry
                  but keeps its position.
ModuleRegistry : typed map from module name / fix_id to the module that
                  owns it. Validated once at construction so an unknown
                  fix_id is caught at plan-build time, not at apply time.
run_audit()    : runs every module's audit in a bounded thread pool.
                  Workers never touch the Registry: they push results onto
                  a queue and the calling thread is the single writer.
"""

from __future__ import annotations

import concurrent.futures
import logging
import queue
import threading
from typing import Callable, Iterable, Iterator

from vpsaudit.checks.base import BaseModule, Finding, FixSpec, timeout_finding
from vpsaudit.errors import ModuleRegistrationError, UnknownFixError

logger = logging.getLogger("vpsaudit.registry")


# ── Finding registry ──────────────────────────────────────────────────────────

class Registry:
    """Ordered collection of findings produced by one audit run."""

    def __init__(self, findings: Iterable[Finding] = ()) -> None:
        self._findings: dict[str, Finding] = {}
        for finding in findings:
            self.add(finding)

    def add(self, finding: Finding) -> None:
        if finding.id in self._findings:
            logger.warning("Duplicate finding id %s from %s, overwriting",
                           finding.id, finding.module_name)
        self._findings[finding.id] = finding

    def extend(self, findings: Iterable[Finding]) -> None:
        for finding in findings:
            self.add(finding)

    def get(self, finding_id: str) -> Finding | None:
        return self._findings.get(finding_id)

    def findings(self) -> list[Finding]:
        return list(self._findings.values())

    def by_module(self) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = {}
        for finding in self._findings.values():
            grouped.setdefault(finding.module_name, []).append(finding)
        return grouped

    def without(self, suppressed: set[str]) -> "Registry":
        """Return a new Registry with the suppressed finding ids removed."""
        return Registry(f for f in self._findings.values() if f.id not in suppressed)

    def __contains__(self, finding_id: object) -> bool:
        return finding_id in self._findings

    def __iter__(self) -> Iterator[Finding]:
        return iter(list(self._findings.values()))

    def __len__(self) -> int:
        return len(self._findings)


# ── Module registry ───────────────────────────────────────────────────────────

class ModuleRegistry:
    """Typed lookup from module name and fix_id to the owning module."""

    def __init__(self, modules: Iterable[BaseModule]) -> None:
        self._modules: dict[str, BaseModule] = {}
        self._fixes: dict[str, tuple[BaseModule, FixSpec]] = {}

        for module in modules:
            if module.name in self._modules:
                raise ModuleRegistrationError(f"Duplicate module name {module.name!r}")
            self._modules[module.name] = module

            for spec in module.fixes:
                if spec.fix_id in self._fixes:
                    owner = self._fixes[spec.fix_id][0].name
                    raise ModuleRegistrationError(
                        f"Fix {spec.fix_id!r} declared by both {owner!r} and {module.name!r}"
                    )
                self._fixes[spec.fix_id] = (module, spec)

    def modules(self) -> list[BaseModule]:
        return list(self._modules.values())

    def names(self) -> list[str]:
        return list(self._modules)

    def get(self, name: str) -> BaseModule | None:
        return self._modules.get(name)

    def resolve(self, fix_id: str) -> tuple[BaseModule, FixSpec]:
        """Return (module, spec) for fix_id or raise UnknownFixError."""
        try:
            return self._fixes[fix_id]
        except KeyError:
            raise UnknownFixError(fix_id) from None

    def __contains__(self, name: object) -> bool:
        return name in self._modules

    def __len__(self) -> int:
        return len(self._modules)


# ── Audit runner ──────────────────────────────────────────────────────────────

def run_audit(
    modules: list[BaseModule],
    timeout: float = 30.0,
    max_workers: int = 8,
    on_module_done: Callable[[BaseModule, list[Finding]], None] | None = None,
) -> Registry:
    """
    Audit every module concurrently and merge results into a fresh Registry.

    Args:
        modules:        Modules to audit, in display order.
        timeout:        Per-module bound in seconds. A module that does not
                        finish is recorded as "<module>.timeout".
        max_workers:    Thread pool size.
        on_module_done: Optional callback, invoked from the calling thread in
                        module order (used by the narrator).

    Results are flushed to the Registry in module order regardless of
    completion order, so discovery order is deterministic.
    """
    registry = Registry()
    if not modules:
        return registry

    results: queue.Queue[tuple[int, list[Finding]]] = queue.Queue()
    pending: dict[int, list[Finding]] = {}
    next_to_flush = 0

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
        for idx, module in enumerate(modules):
            pool.submit(_audit_worker, idx, module, timeout, results)

        for _ in modules:
            idx, findings = results.get()
            pending[idx] = findings
            # Flush contiguous completed modules in input order
            while next_to_flush in pending:
                module = modules[next_to_flush]
                flushed = pending.pop(next_to_flush)
                registry.extend(flushed)
                if on_module_done is not None:
                    on_module_done(module, flushed)
                next_to_flush += 1

    return registry


def _audit_worker(
    idx: int,
    module: BaseModule,
    timeout: float,
    results: "queue.Queue[tuple[int, list[Finding]]]",
) -> None:
    """Run one module's audit under a time bound and enqueue its findings."""
    box: list[list[Finding]] = []

    def target() -> None:
        box.append(module.run_audit())

    # Daemon thread so a hung check cannot block interpreter exit.
    worker = threading.Thread(target=target, name=f"audit-{module.name}", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive() or not box:
        logger.warning("Module %s timed out after %ss", module.name, timeout)
        results.put((idx, [timeout_finding(module.name, timeout)]))
        return

    logger.debug("Module %s returned %d findings", module.name, len(box[0]))
    results.put((idx, box[0]))
