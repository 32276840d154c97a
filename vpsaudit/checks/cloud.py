"""
Cloud environment checks. Informational only: nothing here is fixed
automatically, the agent findings point at a manual review.

Checks:
  - cloud provider (DMI vendor/product, cloud-init datasource)
  - known vendor monitoring agents (running process or active service)
  - other agent-like processes
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from vpsaudit.checks.base import BaseModule, Finding, FixSpec


_DMI_DIR = Path("/sys/class/dmi/id")
_CLOUD_INIT_LOG = Path("/run/cloud-init/ds-identify.log")
_PROC = Path("/proc")

POLICY_ALL_OR_NOTHING = "all_or_nothing"
POLICY_PROPORTIONAL = "proportional"


@dataclass(frozen=True)
class Agent:
    process: str
    service: str
    vendor: str            # provider id, or "generic"
    description: str
    can_disable: str       # "yes" | "no" | "optional"


KNOWN_AGENTS: tuple[Agent, ...] = (
    Agent("AliYunDun", "aegis", "alibaba", "Cloud Security Center", "yes"),
    Agent("AliYunDunMonitor", "aegis", "alibaba", "Cloud Security Center monitor", "yes"),
    Agent("AliYunDunUpdate", "aegis", "alibaba", "Cloud Security Center updater", "yes"),
    Agent("aliyun-service", "aliyun", "alibaba", "Alibaba Cloud assistant", "yes"),
    Agent("cloudmonitor", "cloudmonitor", "alibaba", "CloudMonitor plugin", "yes"),
    Agent("YDService", "YDService", "tencent", "Cloud Workload Protection", "yes"),
    Agent("YDLive", "YDService", "tencent", "Cloud Workload Protection realtime", "yes"),
    Agent("tat_agent", "tat_agent", "tencent", "Automation assistant", "yes"),
    Agent("sgagent", "sgagent", "tencent", "Security component", "yes"),
    Agent("barad_agent", "barad_agent", "tencent", "Monitoring component", "yes"),
    Agent("telescope", "telescope", "huawei", "Cloud Eye agent", "yes"),
    Agent("hostguard", "hostguard", "huawei", "Host Security Service", "yes"),
    Agent("uniagent", "uniagent", "huawei", "Unified agent", "yes"),
    Agent("amazon-ssm-agent", "amazon-ssm-agent", "aws", "Systems Manager Agent", "optional"),
    Agent("amazon-cloudwatch-agent", "amazon-cloudwatch-agent", "aws", "CloudWatch Agent", "optional"),
    Agent("waagent", "walinuxagent", "azure", "Linux VM Agent", "no"),
    Agent("WaLinuxAgent", "walinuxagent", "azure", "Linux VM Agent", "no"),
    Agent("OMSAgentForLinux", "omsagent", "azure", "Log Analytics Agent", "yes"),
    Agent("google_guest_agent", "google-guest-agent", "gcp", "Guest Agent", "optional"),
    Agent("google_osconfig_agent", "google-osconfig-agent", "gcp", "OS Config Agent", "optional"),
    Agent("do-agent", "do-agent", "digitalocean", "Monitoring Agent", "yes"),
    Agent("vultr-helper", "vultr-helper", "vultr", "Helper Agent", "yes"),
    Agent("longview", "longview", "linode", "Monitoring Agent", "yes"),
    Agent("oracle-cloud-agent", "oracle-cloud-agent", "oracle", "Cloud Agent", "optional"),
    Agent("zabbix_agentd", "zabbix-agent", "generic", "Zabbix Agent", "optional"),
    Agent("node_exporter", "prometheus-node-exporter", "generic", "Prometheus Exporter", "optional"),
    Agent("telegraf", "telegraf", "generic", "Telegraf Agent", "optional"),
    Agent("collectd", "collectd", "generic", "Collectd", "optional"),
    Agent("netdata", "netdata", "generic", "Netdata Monitoring", "optional"),
    Agent("datadog-agent", "datadog-agent", "generic", "Datadog Agent", "optional"),
    Agent("newrelic-infra", "newrelic-infra", "generic", "New Relic Agent", "optional"),
)

PROVIDER_NAMES: dict[str, str] = {
    "alibaba": "Alibaba Cloud",
    "tencent": "Tencent Cloud",
    "huawei": "Huawei Cloud",
    "aws": "AWS",
    "azure": "Microsoft Azure",
    "gcp": "Google Cloud Platform",
    "digitalocean": "DigitalOcean",
    "vultr": "Vultr",
    "linode": "Linode (Akamai)",
    "oracle": "Oracle Cloud",
    "hetzner": "Hetzner",
    "ovh": "OVH",
    "scaleway": "Scaleway",
}

_VENDOR_MARKERS = (
    ("Alibaba", "alibaba"), ("Tencent", "tencent"), ("HUAWEI", "huawei"),
    ("Amazon", "aws"), ("Microsoft", "azure"), ("Google", "gcp"),
    ("DigitalOcean", "digitalocean"), ("Vultr", "vultr"), ("Linode", "linode"),
    ("Oracle", "oracle"), ("Hetzner", "hetzner"), ("OVH", "ovh"), ("Scaleway", "scaleway"),
)

_PRODUCT_MARKERS = (
    ("Alibaba", "alibaba"), ("ECS", "alibaba"), ("CVM", "tencent"), ("HVM", "aws"),
    ("Virtual Machine", "azure"), ("Google", "gcp"), ("Droplet", "digitalocean"),
)

_DATASOURCES = {
    "Ec2": "aws", "Azure": "azure", "GCE": "gcp", "DigitalOcean": "digitalocean",
    "Vultr": "vultr", "Hetzner": "hetzner", "AliYun": "alibaba",
}

_SUSPICIOUS = re.compile(r"agent|monitor|guard|watcher|collector|telemetry|spy|tracker", re.IGNORECASE)

_SAFE_PROCESSES = frozenset((
    "gpg-agent", "ssh-agent", "dbus-daemon", "polkitd", "packagekitd",
    "systemd-journald", "systemd-logind", "systemd-networkd", "systemd-resolved",
    "systemd-timesyncd", "systemd-udevd", "udisksd", "accounts-daemon",
    "avahi-daemon", "ModemManager", "NetworkManager", "wpa_supplicant", "cupsd",
    "cron", "atd", "rsyslogd", "sshd", "nginx", "apache2", "httpd", "mysqld",
    "postgres", "redis-server", "mongod", "dockerd", "containerd",
))


# ── Detection ─────────────────────────────────────────────────────────────────

def _read(path: Path) -> str:
    try:
        return path.read_text().strip()
    except OSError:
        return ""


def detect_provider(dmi_dir: Path = _DMI_DIR, cloud_init_log: Path = _CLOUD_INIT_LOG) -> str | None:
    """Return a provider id ("aws", "hetzner", …) or None when unrecognised."""
    vendor = _read(dmi_dir / "sys_vendor")
    for marker, provider in _VENDOR_MARKERS:
        if marker in vendor:
            return provider

    product = _read(dmi_dir / "product_name")
    for marker, provider in _PRODUCT_MARKERS:
        if marker in product:
            return provider

    m = re.search(r"datasource:\s*(\w+)", _read(cloud_init_log))
    if m:
        return _DATASOURCES.get(m.group(1))
    return None


def running_processes(proc_root: Path = _PROC) -> set[str]:
    """Process names (comm) of everything currently running."""
    names = set()
    for comm in proc_root.glob("[0-9]*/comm"):
        name = _read(comm)
        if name:
            names.add(name)
    return names


def agent_severity(
    agents: list[Agent],
    provider: str | None,
    policy: str = POLICY_ALL_OR_NOTHING,
    threshold: float = 1.0,
) -> str:
    """
    Severity of the agents-found finding.

    Agents owned by the detected provider are expected on its images, so
    their presence is less alarming:
      all_or_nothing: low only when every agent belongs to the provider
      proportional  : low when the provider-owned share reaches threshold
    Anything else is medium.
    """
    if not agents or provider is None:
        return "medium"
    own = sum(1 for a in agents if a.vendor == provider)
    if policy == POLICY_PROPORTIONAL:
        return "low" if own / len(agents) >= threshold else "medium"
    return "low" if own == len(agents) else "medium"


class CloudModule(BaseModule):
    """Cloud provider and monitoring agent inventory."""

    name = "cloud"
    title = "Cloud Environment"
    icon = "☁️"
    scan_description = "Identifying the cloud provider and any vendor monitoring agents."

    # Review-only: no handlers, so the executor reports them as manual.
    fixes = (
        FixSpec("cloud.review_agents", "safe", "Review vendor monitoring agents"),
        FixSpec("cloud.review_suspicious", "safe", "Review agent-like processes"),
    )

    def __init__(self, policy: str = POLICY_ALL_OR_NOTHING, threshold: float = 1.0) -> None:
        self.policy = policy
        self.threshold = threshold

    def audit(self) -> list[Finding]:
        provider = detect_provider()
        findings = [self._provider_finding(provider)]

        processes = running_processes()
        agents = [a for a in KNOWN_AGENTS if a.process in processes or self._service_active(a.service)]
        findings.append(self._agents_finding(agents, provider))

        suspicious = self._suspicious(processes)
        if suspicious:
            findings.append(self._failed(
                "cloud.suspicious_agents",
                f"{len(suspicious)} agent-like processes",
                severity="low",
                description=", ".join(suspicious),
                suggestion="Review these processes: legitimate monitoring or unwanted software",
                fix_id="cloud.review_suspicious",
            ))
        return findings

    def _provider_finding(self, provider: str | None) -> Finding:
        if provider:
            name = PROVIDER_NAMES.get(provider, provider)
            return self._passed(
                "cloud.provider_detected",
                f"Cloud provider: {name}",
                severity="info",
                description="Running on cloud infrastructure",
            )
        return self._passed(
            "cloud.provider_unknown",
            "Cloud provider unknown",
            severity="info",
            description="Bare metal or an unrecognised VPS",
        )

    def _agents_finding(self, agents: list[Agent], provider: str | None) -> Finding:
        if not agents:
            return self._passed(
                "cloud.no_known_agents",
                "No known cloud monitoring agents",
                severity="info",
            )

        seen: dict[str, Agent] = {}
        for agent in agents:
            seen.setdefault(agent.service, agent)

        lines = []
        for agent in seen.values():
            vendor = PROVIDER_NAMES.get(agent.vendor, agent.vendor)
            if agent.can_disable == "no":
                hint = "required by the platform, do not disable"
            elif agent.can_disable == "yes":
                hint = f"systemctl disable --now {agent.service}"
            else:
                hint = "review before disabling"
            lines.append(f"{agent.process} ({vendor}, {agent.description}): {hint}")

        return self._failed(
            "cloud.agents_found",
            f"Cloud monitoring agents found: {len(seen)}",
            severity=agent_severity(agents, provider, self.policy, self.threshold),  # type: ignore[arg-type]
            description="\n".join(lines),
            suggestion="Review whether these agents are needed and disable them if not",
            fix_id="cloud.review_agents",
        )

    def _service_active(self, service: str) -> bool:
        rc, out, _ = self.shell(["systemctl", "is-active", service], timeout=5)
        return rc == 0 and out.strip() == "active"

    def _suspicious(self, processes: set[str]) -> list[str]:
        known = {a.process for a in KNOWN_AGENTS}
        return sorted(
            p for p in processes
            if p not in _SAFE_PROCESSES and p not in known and _SUSPICIOUS.search(p)
        )


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    CloudModule,
]
