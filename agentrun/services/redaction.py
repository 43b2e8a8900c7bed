from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any

from agentrun.core.config import PiiRule, get_settings
from agentrun.core.errors import RedactionConfigError
from agentrun.domain.context import TASK_BUCKETS, Context, ContextMessage, FileSection, TaskSection
from agentrun.domain.state import AccessRole


logger = logging.getLogger(__name__)

INTERNAL_REPLACEMENT = "[INTERNAL COMMUNICATION REDACTED]"

# Markers for team-only discussion hidden from the most restricted role.
_INTERNAL_PATTERNS = (
    re.compile(r"\[INTERNAL\].*?\[/INTERNAL\]", re.DOTALL),
    re.compile(r"@team\s+[^\n]+", re.IGNORECASE),
    re.compile(r"\binternal\s+note:.*$", re.IGNORECASE | re.MULTILINE),
)

_SENSITIVE_ACCESS: dict[AccessRole, frozenset[str]] = {
    AccessRole.ADMIN: frozenset({"general", "financial", "internal", "all"}),
    AccessRole.CONSULTANT: frozenset({"general", "internal"}),
    AccessRole.TEAM: frozenset({"general", "internal"}),
    AccessRole.CLIENT: frozenset({"general"}),
}


def can_access_sensitive_data(role: AccessRole, data_type: str = "general") -> bool:
    return data_type in _SENSITIVE_ACCESS.get(role, frozenset())


class PIIRedactor:
    """Pattern-based PII scrubbing plus role-gated field suppression."""

    def __init__(
        self,
        rules: list[PiiRule] | None = None,
        *,
        replacement: str | None = None,
        enabled: bool | None = None,
        strict: bool = True,
    ) -> None:
        settings = get_settings()
        self.rules = list(rules if rules is not None else settings.pii_rules)
        self.replacement = settings.pii_replacement if replacement is None else replacement
        self.enabled = settings.pii_redaction_enabled if enabled is None else enabled
        self._compiled: list[tuple[str, re.Pattern[str]]] = []
        for rule in self.rules:
            try:
                self._compiled.append((rule.name, re.compile(rule.pattern)))
            except re.error:
                # Reported by validate_configuration; never applied.
                continue
        if strict:
            issues = self.validate_configuration()
            if issues:
                raise RedactionConfigError(issues)

    def validate_configuration(self) -> list[str]:
        issues: list[str] = []
        for rule in self.rules:
            try:
                re.compile(rule.pattern)
            except re.error as exc:
                issues.append(f"invalid regex pattern for PII type {rule.name}: {exc}")
        if not self.replacement:
            issues.append("PII replacement text is not configured")
        else:
            # A rule matching its own replacement would re-redact already redacted spans.
            for name, pattern in self._compiled:
                if pattern.search(self.replacement):
                    issues.append(f"PII replacement text is matched by rule {name}")
        return issues

    def redact_text(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        redacted = text
        for _, pattern in self._compiled:
            redacted = pattern.sub(self.replacement, redacted)
        return redacted

    def redact_context(self, context: Context, role: AccessRole) -> Context:
        if not self.enabled:
            return context
        restricted = role.is_most_restricted
        messages = [self._redact_message(message, restricted) for message in context.messages]
        tasks = self._redact_tasks(context.tasks, restricted)
        files = self._redact_files(context.files, restricted)
        logger.info(
            "pii_redaction_applied role=%s messages=%s restricted=%s",
            role.value,
            len(messages),
            restricted,
        )
        return replace(
            context,
            system_prompt=self.redact_text(context.system_prompt),
            messages=messages,
            tasks=tasks,
            files=files,
        )

    def _redact_message(self, message: ContextMessage, restricted: bool) -> ContextMessage:
        content = self.redact_text(message.content)
        if restricted:
            for pattern in _INTERNAL_PATTERNS:
                content = pattern.sub(INTERNAL_REPLACEMENT, content)
        return replace(message, content=content)

    def _redact_tasks(self, tasks: TaskSection, restricted: bool) -> TaskSection:
        buckets: dict[str, Any] = {}
        for bucket in TASK_BUCKETS:
            redacted_bucket = []
            for task in getattr(tasks, bucket):
                item = dict(task)
                for key in ("description", "notes"):
                    if isinstance(item.get(key), str):
                        item[key] = self.redact_text(item[key])
                if restricted:
                    item.pop("internal_notes", None)
                redacted_bucket.append(item)
            buckets[bucket] = redacted_bucket
        return replace(tasks, **buckets)

    def _redact_files(self, files: FileSection, restricted: bool) -> FileSection:
        recent_files = []
        for file in files.recent_files:
            if restricted and file.get("confidential"):
                continue
            item = dict(file)
            for key in ("name", "description"):
                if isinstance(item.get(key), str):
                    item[key] = self.redact_text(item[key])
            recent_files.append(item)
        project_meta = dict(files.project_meta)
        if isinstance(project_meta.get("description"), str):
            project_meta["description"] = self.redact_text(project_meta["description"])
        return replace(files, recent_files=recent_files, project_meta=project_meta)
