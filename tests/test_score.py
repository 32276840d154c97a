"""
Tests for calculate_score().

Verifies the algorithm:
  - Failed high: -15, medium: -7, low: -2, info: 0
  - Passed findings: 0 (never add points)
  - Floor at 0, never above 100
  - Counts reflect failed findings only
"""

import pytest

from vpsaudit.checks.base import Score, calculate_score


class TestCalculateScore:
    def test_empty_is_perfect(self):
        assert calculate_score([]) == Score(value=100)

    def test_firewall_disabled_scenario(self, finding):
        findings = [
            finding(id="ufw.disabled", module_name="ufw", severity="high", fix_id="ufw.enable"),
            finding(id="update.no_updates", module_name="update", severity="low", status="passed"),
        ]
        score = calculate_score(findings)
        assert score.value == 85
        assert score.high == 1
        assert score.low == 0
        assert score.passed == 1

    @pytest.mark.parametrize("severity,expected", [
        ("high", 85),
        ("medium", 93),
        ("low", 98),
        ("info", 100),
    ])
    def test_single_failed_finding_weight(self, finding, severity, expected):
        assert calculate_score([finding(severity=severity)]).value == expected

    def test_passed_findings_do_not_add_points(self, finding):
        findings = [finding(id=f"ok.{i}", status="passed", severity="high") for i in range(5)]
        findings.append(finding(id="bad", severity="medium"))
        assert calculate_score(findings).value == 93

    def test_floor_at_zero(self, finding):
        findings = [finding(id=f"bad.{i}", severity="high") for i in range(10)]
        score = calculate_score(findings)
        assert score.value == 0
        assert score.high == 10

    def test_counts_per_severity(self, finding):
        findings = [
            finding(id="a", severity="high"),
            finding(id="b", severity="medium"),
            finding(id="c", severity="medium"),
            finding(id="d", severity="low"),
            finding(id="e", severity="low", status="passed"),
        ]
        score = calculate_score(findings)
        assert (score.high, score.medium, score.low, score.passed) == (1, 2, 1, 1)
        assert score.value == 100 - 15 - 14 - 2

    def test_adding_failed_findings_never_raises_score(self, finding):
        findings = [finding(id="base", severity="low")]
        previous = calculate_score(findings).value
        for i in range(12):
            findings.append(finding(id=f"more.{i}", severity="medium"))
            current = calculate_score(findings).value
            assert 0 <= current <= previous
            previous = current
