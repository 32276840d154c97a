"""
Remediation subsystem for VPS Audit.

Modules:
  plan.py    : build_plan: selection → ordered, deduplicated RemediationPlan.
  guard.py   : danger classification, acknowledgment, lockout protocol.
  backup.py  : file snapshots and restore for rollback.
  executor.py: execute_plan: sequential apply with rollback-and-halt.
  runner.py  : guided session driving the above through an Interaction.
"""
