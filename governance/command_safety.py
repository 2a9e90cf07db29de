"""
Command Safety

Screens shell commands attached to gates before they are accepted.

CRITICAL CONSTRAINTS:
- PURE: no store access, no events, no execution
- CONSERVATIVE: a match on any pattern marks the command dangerous
- SEVERITY: the worst matched pattern wins (critical > high > medium)
- Embedded secrets (live API keys, credentialed URLs, auth headers) are
  always critical
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .errors import ValidationError

logger = logging.getLogger("command_safety")

MAX_COMMAND_LENGTH = 1000


class CommandSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"

    @property
    def rank(self) -> int:
        return {"critical": 3, "high": 2, "medium": 1}[self.value]


@dataclass(frozen=True)
class DangerousPattern:
    name: str
    pattern: Optional["re.Pattern"]
    severity: CommandSeverity
    description: str
    examples: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "severity": self.severity.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class CommandAnalysis:
    """Verdict for one command. A value, never an exception."""
    is_dangerous: bool
    message: str
    severity: Optional[CommandSeverity] = None
    matched_patterns: Tuple[DangerousPattern, ...] = ()
    recommendations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isDangerous": self.is_dangerous,
            "severity": self.severity.value if self.severity else None,
            "matchedPatterns": [p.to_dict() for p in self.matched_patterns],
            "recommendations": list(self.recommendations),
            "message": self.message,
        }


# -----------------------------------------------------------------------------
# Pattern Tables
# -----------------------------------------------------------------------------
DANGEROUS_PATTERNS: Tuple[DangerousPattern, ...] = (
    # Destructive file operations
    DangerousPattern(
        "recursive_delete",
        re.compile(r"rm\s+(-[fr]{1,2}|--recursive|--force).*[\s/]"),
        CommandSeverity.CRITICAL,
        "Recursive delete with force flag",
        ("rm -rf /", "rm -r /important", "rm --recursive --force ."),
    ),
    DangerousPattern(
        "force_overwrite",
        re.compile(r"dd\s+.*if=.*of=|mkfs|fdisk|parted\s+"),
        CommandSeverity.CRITICAL,
        "Low-level disk operations",
        ("dd if=/dev/zero of=/dev/sda", "mkfs.ext4 /dev/sda1", "fdisk /dev/sda"),
    ),
    # Infrastructure changes
    DangerousPattern(
        "terraform_apply",
        re.compile(r"terraform\s+apply|terraform\s+destroy"),
        CommandSeverity.CRITICAL,
        "Terraform infrastructure changes without approval",
        ("terraform apply", "terraform destroy"),
    ),
    DangerousPattern(
        "kubernetes_delete",
        re.compile(r"kubectl\s+delete|helm\s+uninstall|kubectl\s+drain"),
        CommandSeverity.CRITICAL,
        "Kubernetes resource deletion",
        ("kubectl delete pod", "helm uninstall release", "kubectl drain node"),
    ),
    DangerousPattern(
        "database_drop",
        re.compile(r"drop\s+database|drop\s+table|truncate\s+table|delete\s+from\s+\w+\s*;", re.IGNORECASE),
        CommandSeverity.CRITICAL,
        "Database operations that cannot be easily reversed",
        ("DROP DATABASE prod", "DROP TABLE users", "TRUNCATE TABLE logs"),
    ),
    # Bulk dependency removal
    DangerousPattern(
        "pip_uninstall_all",
        re.compile(r"pip\s+uninstall\s+(-y|--yes).*[\s*]|pip\s+uninstall\s+.*package"),
        CommandSeverity.HIGH,
        "Bulk pip uninstall operations",
        ("pip uninstall -y *",),
    ),
    DangerousPattern(
        "npm_uninstall_all",
        re.compile(r"npm\s+uninstall.*(-g|--save-dev|-D|-S).*\*|npm\s+prune.*--production"),
        CommandSeverity.HIGH,
        "Bulk npm uninstall operations",
        ("npm prune --production",),
    ),
    # Credential exposure
    DangerousPattern(
        "environment_export",
        re.compile(r"export\s+\w*(?:KEY|TOKEN|SECRET|PASSWORD|APIKEY|API_KEY)", re.IGNORECASE),
        CommandSeverity.HIGH,
        "Exporting sensitive environment variables",
        ("export DB_PASSWORD=", "export API_KEY=secret"),
    ),
    DangerousPattern(
        "credential_hardcoding",
        re.compile(r"echo\s+.*(?:password|secret|key|token|apikey|api_key).*[>|]", re.IGNORECASE),
        CommandSeverity.HIGH,
        "Writing credentials to files",
        ('echo "password" > .env',),
    ),
    # Permissions
    DangerousPattern(
        "chmod_dangerous",
        re.compile(r"chmod\s+777|chmod\s+666|chmod\s+-R\s+777"),
        CommandSeverity.HIGH,
        "Overly permissive file permissions",
        ("chmod 777 *", "chmod -R 777 /home"),
    ),
    DangerousPattern(
        "sudo_all",
        re.compile(r"sudo\s+(?:su\s+-|passwd|visudo)"),
        CommandSeverity.HIGH,
        "Privilege escalation operations",
        ("sudo su -", "sudo passwd root", "sudo visudo"),
    ),
    # Network
    DangerousPattern(
        "firewall_open_all",
        re.compile(r"ufw\s+allow\s+\d+/\d+|iptables\s+.*policy\s+ACCEPT|firewall-cmd.*--set-default-zone"),
        CommandSeverity.HIGH,
        "Opening firewall to all traffic",
        ("ufw allow 0/0", "iptables --policy INPUT ACCEPT"),
    ),
    # History rewrites
    DangerousPattern(
        "git_force_push",
        re.compile(r"git\s+push\s+(-f|--force|--force-with-lease).*(?:origin|upstream|main|master)"),
        CommandSeverity.HIGH,
        "Force push to shared branches",
        ("git push -f origin main",),
    ),
    DangerousPattern(
        "git_reset_hard",
        re.compile(r"git\s+reset\s+(-h|--hard).*HEAD~\d+"),
        CommandSeverity.HIGH,
        "Hard reset that loses commits",
        ("git reset --hard HEAD~10",),
    ),
)

SECRET_LEAK_PATTERNS: Tuple["re.Pattern", ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"sk_live_\w+",
        r"pk_live_\w+",
        r"ghp_\w+",
        r"github_pat_\w+",
        r"sqlalchemy://.+:.+@",
        r"mongodb://.*:.*@",
        r"postgres://.*:.*@",
        r"mysql://.*:.*@",
        r"(Bearer|Basic)\s+[A-Za-z0-9\-._~+/]+=*",
        r"api[_-]?key[\"\s:=]+[A-Za-z0-9\-_]+",
        r"password[\"\s:=]+[^\s\"]+",
        r"secret[\"\s:=]+[^\s\"]+",
        r"token[\"\s:=]+[^\s\"]+",
    )
)

SECRET_LEAK = DangerousPattern(
    "secret_leak",
    None,
    CommandSeverity.CRITICAL,
    "Potential API key, token, or password in command",
)

SEVERITY_ADVICE: Dict[CommandSeverity, str] = {
    CommandSeverity.CRITICAL: "This command cannot be executed automatically",
    CommandSeverity.HIGH: "This command requires explicit user approval",
    CommandSeverity.MEDIUM: "Verify this command is safe before execution",
}


# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------
def analyze_command(command: str) -> CommandAnalysis:
    """Match a command against the dangerous and secret-leak pattern tables."""
    matched: List[DangerousPattern] = [p for p in DANGEROUS_PATTERNS if p.pattern.search(command)]
    if any(p.search(command) for p in SECRET_LEAK_PATTERNS):
        matched.append(SECRET_LEAK)

    if not matched:
        return CommandAnalysis(is_dangerous=False, message="Command appears safe to execute")

    severity = max((p.severity for p in matched), key=lambda s: s.rank)
    recommendations = list(dict.fromkeys(p.description for p in matched))
    recommendations.append(SEVERITY_ADVICE[severity])

    return CommandAnalysis(
        is_dangerous=True,
        message=f"Dangerous patterns detected: {', '.join(p.name for p in matched)}",
        severity=severity,
        matched_patterns=tuple(matched),
        recommendations=tuple(recommendations),
    )


def is_safe_command(command: str) -> bool:
    return not analyze_command(command).is_dangerous


def describe_danger(analysis: CommandAnalysis) -> str:
    """One-line refusal text for a dangerous analysis."""
    severity = (analysis.severity or CommandSeverity.HIGH).value
    return f"Dangerous command detected ({severity}): {analysis.message}. {'; '.join(analysis.recommendations)}"


def screen_command(command: Any, field_name: str = "command") -> str:
    """
    Accept a gate command only if it is a bounded, non-dangerous string.

    Raises:
        ValidationError: empty, too long, or dangerous command
    """
    if not isinstance(command, str) or not command.strip():
        raise ValidationError(f"{field_name} must be a non-empty string", field_name)
    if len(command) > MAX_COMMAND_LENGTH:
        raise ValidationError(
            f"{field_name} must be less than {MAX_COMMAND_LENGTH} characters", field_name
        )
    analysis = analyze_command(command)
    if analysis.is_dangerous:
        logger.warning(f"Rejected gate command ({analysis.severity.value}): {analysis.message}")
        raise ValidationError(describe_danger(analysis), field_name)
    return command.strip()
