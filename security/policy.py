"""Capability policy - per-tool permissions, blocked resources and audit log."""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from agent.config import SecurityConfig
from agent.response import ToolDefinition


RISK_LEVELS = ("safe", "moderate", "dangerous", "destructive")
SIDE_EFFECT_CATEGORIES = ("filesystem", "terminal", "web")

PATH_KEYS = ("path", "file_path", "filePath", "directory", "dir", "file", "target_path", "targetPath")
SECRET_KEYS = ("password", "token", "secret", "key", "apikey", "api_key", "credential")
MAX_AUDIT_ENTRIES = 1000
MAX_ARG_LENGTH = 500


@dataclass
class PermissionCheck:
    allowed: bool
    requires_approval: bool
    risk_level: str
    reason: str | None = None


@dataclass
class ToolPermission:
    """What a tool is allowed to touch and how risky that is."""
    tool_name: str
    category: str = "general"
    risk_level: str = "safe"
    always_require_approval: bool = False

    def __post_init__(self):
        if self.risk_level not in RISK_LEVELS:
            raise ValueError(f"Unknown risk level: {self.risk_level}")


@dataclass
class AuditEntry:
    tool_name: str
    args: dict
    outcome: str
    actor: str
    id: str = field(default_factory=lambda: f"audit_{uuid.uuid4().hex[:12]}")
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class CapabilityPolicy:
    """
    Decides whether a tool call may run at all. Unknown tools are refused;
    filesystem tools may not touch blocked paths and terminal tools may not
    run blocked commands. Every decision is appended to an audit log.
    """

    def __init__(self, config: SecurityConfig | None = None, logger: logging.Logger | None = None):
        self.config = config or SecurityConfig()
        self._permissions: dict[str, ToolPermission] = {}
        self._blocked_commands = [re.compile(p, re.IGNORECASE) for p in self.config.blocked_commands]
        self._audit: deque[AuditEntry] = deque(maxlen=MAX_AUDIT_ENTRIES)
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("tiered_agents.security")

    # ── Registration ─────────────────────────────────────────────────

    def register_tool(self, permission: ToolPermission) -> None:
        self._permissions[permission.tool_name] = permission

    def register_definition(self, definition: ToolDefinition, always_require_approval: bool = False) -> ToolPermission:
        """Derive a permission from a tool definition's category and danger flag."""
        if definition.dangerous:
            risk = "dangerous"
        elif definition.category in SIDE_EFFECT_CATEGORIES:
            risk = "moderate"
        else:
            risk = "safe"
        permission = ToolPermission(
            tool_name=definition.name,
            category=definition.category,
            risk_level=risk,
            always_require_approval=always_require_approval,
        )
        self.register_tool(permission)
        return permission

    def get_permission(self, tool_name: str) -> ToolPermission | None:
        return self._permissions.get(tool_name)

    # ── Checks ───────────────────────────────────────────────────────

    def check_permission(self, tool_name: str, args: dict) -> PermissionCheck:
        permission = self._permissions.get(tool_name)
        if permission is None:
            return PermissionCheck(
                allowed=False,
                requires_approval=True,
                risk_level="dangerous",
                reason=f"Unknown tool: {tool_name}",
            )

        if permission.category == "filesystem":
            path = self.extract_path(args)
            if path and self.is_blocked_path(path):
                return PermissionCheck(
                    allowed=False,
                    requires_approval=False,
                    risk_level="destructive",
                    reason=f"Path '{path}' is blocked by security policy",
                )

        if permission.category == "terminal":
            command = args.get("command")
            if isinstance(command, str) and self.is_blocked_command(command):
                return PermissionCheck(
                    allowed=False,
                    requires_approval=False,
                    risk_level="destructive",
                    reason=f"Command blocked by security policy: {command[:50]}",
                )

        if permission.always_require_approval:
            return PermissionCheck(
                allowed=True,
                requires_approval=True,
                risk_level=permission.risk_level,
                reason=f"Tool '{tool_name}' requires user approval",
            )
        return PermissionCheck(allowed=True, requires_approval=False, risk_level=permission.risk_level)

    @staticmethod
    def extract_path(args: dict) -> str | None:
        for key in PATH_KEYS:
            value = args.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def is_blocked_path(self, path: str) -> bool:
        normalized = os.path.normpath(os.path.abspath(os.path.expanduser(path)))
        for pattern in self.config.blocked_paths:
            expanded = os.path.expanduser(pattern)
            base = expanded[:-2] if expanded.endswith("/*") or expanded.endswith("\\*") else expanded
            if fnmatch.fnmatch(normalized, expanded) or normalized == os.path.normpath(base):
                return True
        return False

    def is_blocked_command(self, command: str) -> bool:
        return any(p.search(command) for p in self._blocked_commands)

    # ── Audit ────────────────────────────────────────────────────────

    def log_execution(self, tool_name: str, args: dict, outcome: str, actor: str) -> AuditEntry:
        entry = AuditEntry(
            tool_name=tool_name,
            args=self.sanitize_args(args),
            outcome=outcome,
            actor=actor,
        )
        with self._lock:
            self._audit.append(entry)
            self._append_audit_file(entry)
        self._logger.info("%s %s (%s)", tool_name, outcome, actor)
        return entry

    def audit_log(self, limit: int | None = None) -> list[AuditEntry]:
        with self._lock:
            entries = list(self._audit)
        return entries[-limit:] if limit else entries

    def _append_audit_file(self, entry: AuditEntry) -> None:
        path = self.config.audit_log_path
        if not path:
            return
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(entry), default=str) + "\n")

    @staticmethod
    def sanitize_args(args: dict) -> dict:
        """Redact secret-looking values and truncate long ones."""
        cleaned = {}
        for key, value in (args or {}).items():
            lowered = key.lower()
            if any(secret in lowered for secret in SECRET_KEYS):
                cleaned[key] = "[REDACTED]"
            elif isinstance(value, str) and len(value) > MAX_ARG_LENGTH:
                cleaned[key] = value[:MAX_ARG_LENGTH] + "...[truncated]"
            else:
                cleaned[key] = value
        return cleaned
