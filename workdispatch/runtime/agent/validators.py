"""Input validation for text that enters a model context.

Content is checked against two pattern lists. Blocked patterns reject the
input outright; suspicious patterns are rewritten in place. Board and
worker context fields go through the same content rule plus hard length
caps on identifiers and names.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Pattern, Sequence

from .models import ALLOWED_ROLES, BoardContext, Message, WorkerContext

logger = logging.getLogger("workdispatch.validator")

MAX_ID_LENGTH = 100
MAX_NAME_LENGTH = 200
MAX_ROLE_DESCRIPTION_LENGTH = 500
_MAX_SANITIZE_PASSES = 8


@dataclass(frozen=True)
class SanitizeRule:
    name: str
    pattern: Pattern[str]
    replacement: str = ""


DEFAULT_BLOCKED_PATTERNS: tuple[Pattern[str], ...] = (
    # Instruction override
    re.compile(r"\b(ignore|disregard|forget)\s+(all\s+)?(the\s+)?(previous|prior|above|earlier)\s+(instructions|prompts|rules|messages)", re.I),
    re.compile(r"\boverride\s+(your|the|all)\s+(system\s+)?(instructions|rules|prompt)", re.I),
    # Role breakout
    re.compile(r"\byou\s+are\s+(now|no\s+longer)\s+(a|an|the|in)\b", re.I),
    re.compile(r"\bact\s+as\s+(if\s+you\s+are\s+)?(an?\s+)?(unrestricted|unfiltered|jailbroken)", re.I),
    re.compile(r"\bpretend\s+(that\s+)?you\s+(have\s+no|are\s+not\s+bound)", re.I),
    # Fake system markers
    re.compile(r"^\s*(\[|<|#+\s*)?system(\]|>)?\s*:", re.I | re.M),
    re.compile(r"<\|?(im_start|im_end|system|endoftext)\|?>", re.I),
    re.compile(r"\[/?(SYSTEM|INST)\]"),
)

STRICT_EXTRA_BLOCKED_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"\b(bypass|circumvent|disable)\s+(the\s+|your\s+|all\s+)?(safety|filters?|guardrails|restrictions)", re.I),
    re.compile(r"\b(reveal|show|print|repeat)\s+(me\s+)?(your|the)\s+(system\s+prompt|instructions|hidden\s+prompt)", re.I),
    re.compile(r"\b(developer|admin|god)\s+mode\b", re.I),
    re.compile(r"\bjailbreak\b", re.I),
    re.compile(r"\bnew\s+instructions\s*:", re.I),
)

DEFAULT_SUSPICIOUS_PATTERNS: tuple[SanitizeRule, ...] = (
    SanitizeRule("control_chars", re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")),
    SanitizeRule("html_tags", re.compile(r"</?[A-Za-z][^<>]*>")),
    SanitizeRule("whitespace_run", re.compile(r"[^\S\n]{20,}"), " "),
    SanitizeRule("newline_run", re.compile(r"\n{5,}"), "\n\n\n"),
)


@dataclass(frozen=True)
class ValidationConfig:
    max_message_length: int = 10_000
    max_message_count: int = 100
    allowed_roles: tuple[str, ...] = ALLOWED_ROLES
    blocked_patterns: tuple[Pattern[str], ...] = DEFAULT_BLOCKED_PATTERNS
    suspicious_patterns: tuple[SanitizeRule, ...] = DEFAULT_SUSPICIOUS_PATTERNS

    def extend(
        self,
        blocked: Sequence[Pattern[str]] = (),
        suspicious: Sequence[SanitizeRule] = (),
        **overrides: Any,
    ) -> ValidationConfig:
        """Return a copy with extra patterns appended to the current lists."""
        return dataclasses.replace(
            self,
            blocked_patterns=self.blocked_patterns + tuple(blocked),
            suspicious_patterns=self.suspicious_patterns + tuple(suspicious),
            **overrides,
        )

    @classmethod
    def strict(cls) -> ValidationConfig:
        return cls().extend(
            blocked=STRICT_EXTRA_BLOCKED_PATTERNS,
            max_message_length=5_000,
            max_message_count=50,
        )

    @classmethod
    def permissive(cls) -> ValidationConfig:
        return cls().extend(max_message_length=50_000, max_message_count=200)

    @classmethod
    def from_profile(cls, profile: str) -> ValidationConfig:
        if profile == "strict":
            return cls.strict()
        if profile == "permissive":
            return cls.permissive()
        return cls()


@dataclass
class ValidationResult:
    is_valid: bool
    sanitized_content: Any = None
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


class InputValidator:
    def __init__(self, config: ValidationConfig | None = None) -> None:
        self.config = config or ValidationConfig()

    # ─── Content rule ────────────────────────────────────────────────

    def _find_blocked(self, content: str) -> Pattern[str] | None:
        for pattern in self.config.blocked_patterns:
            if pattern.search(content):
                return pattern
        return None

    def sanitize(self, content: str) -> str:
        # Repeat until stable so sanitized output re-validates unchanged
        for _ in range(_MAX_SANITIZE_PASSES):
            before = content
            for rule in self.config.suspicious_patterns:
                content = rule.pattern.sub(rule.replacement, content)
            content = content.strip()
            if content == before:
                break
        return content

    def _check_content(self, content: Any, label: str, max_length: int) -> ValidationResult:
        if not isinstance(content, str):
            return ValidationResult(False, reason=f"{label} must be a string")
        if len(content) > max_length:
            return ValidationResult(
                False, reason=f"{label} exceeds maximum length of {max_length} characters"
            )
        sanitized = self.sanitize(content)
        # Stripping tags can join a blocked phrase back together
        blocked = self._find_blocked(content) or self._find_blocked(sanitized)
        if blocked is not None:
            logger.warning(f"Blocked pattern in {label}: {blocked.pattern}")
            return ValidationResult(False, reason=f"Blocked pattern in {label}: {blocked.pattern}")
        warnings = [f"{label} was sanitized"] if sanitized != content else []
        return ValidationResult(True, sanitized_content=sanitized, warnings=warnings)

    def validate_text(self, text: Any) -> ValidationResult:
        return self._check_content(text, "content", self.config.max_message_length)

    # ─── Messages ────────────────────────────────────────────────────

    def validate_messages(self, messages: Sequence[Any]) -> ValidationResult:
        """Validate a conversation before it is sent to a model.

        On success ``sanitized_content`` is a list of message dicts with
        sanitized content. Any failure rejects the whole list.
        """
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            return ValidationResult(False, reason="Messages must be a list")
        if not messages:
            return ValidationResult(False, reason="Messages list cannot be empty")
        if len(messages) > self.config.max_message_count:
            return ValidationResult(
                False,
                reason=f"Too many messages: {len(messages)} exceeds maximum of "
                       f"{self.config.max_message_count}",
            )

        sanitized: list[dict[str, Any]] = []
        warnings: list[str] = []
        for i, raw in enumerate(messages):
            if isinstance(raw, Message):
                msg = raw.to_wire()
            elif isinstance(raw, Mapping):
                msg = dict(raw)
            else:
                return ValidationResult(False, reason=f"message[{i}] must be an object")

            role = msg.get("role")
            if not role or role not in self.config.allowed_roles:
                return ValidationResult(False, reason=f"message[{i}] has invalid role: {role!r}")

            result = self._check_content(
                msg.get("content"), f"message[{i}].content", self.config.max_message_length
            )
            if not result.is_valid:
                return result
            msg["content"] = result.sanitized_content
            warnings.extend(result.warnings)
            sanitized.append(msg)

        return ValidationResult(True, sanitized_content=sanitized, warnings=warnings)

    # ─── Auxiliary context ───────────────────────────────────────────

    def _check_identifier(self, value: Any, label: str, max_length: int, required: bool) -> str | None:
        if value is None:
            if required:
                return f"{label} is required"
            return None
        if not isinstance(value, str):
            return f"{label} must be a string"
        if required and not value.strip():
            return f"{label} cannot be empty"
        if len(value) > max_length:
            return f"{label} exceeds maximum length of {max_length} characters"
        return None

    def _context_fields(self, context: Any) -> Mapping[str, Any] | None:
        if dataclasses.is_dataclass(context) and not isinstance(context, type):
            return dataclasses.asdict(context)
        if isinstance(context, Mapping):
            return context
        return None

    def validate_board_context(self, context: Any) -> ValidationResult:
        fields = self._context_fields(context)
        if fields is None:
            return ValidationResult(False, reason="Board context must be an object")

        for key, limit in (("id", MAX_ID_LENGTH), ("name", MAX_NAME_LENGTH)):
            error = self._check_identifier(fields.get(key), f"board.{key}", limit, required=True)
            if error:
                return ValidationResult(False, reason=error)

        name = self._check_content(fields["name"], "board.name", MAX_NAME_LENGTH)
        if not name.is_valid:
            return name

        description = fields.get("description")
        if description is not None:
            checked = self._check_content(
                description, "board.description", self.config.max_message_length
            )
            if not checked.is_valid:
                return checked
            description = checked.sanitized_content

        board = BoardContext(id=fields["id"], name=name.sanitized_content, description=description)
        return ValidationResult(True, sanitized_content=board)

    def validate_worker_context(self, context: Any) -> ValidationResult:
        fields = self._context_fields(context)
        if fields is None:
            return ValidationResult(False, reason="Worker context must be an object")

        error = (
            self._check_identifier(fields.get("id"), "worker.id", MAX_ID_LENGTH, required=False)
            or self._check_identifier(fields.get("name"), "worker.name", MAX_NAME_LENGTH, required=True)
            or self._check_identifier(
                fields.get("role_description"), "worker.role_description",
                MAX_ROLE_DESCRIPTION_LENGTH, required=False,
            )
        )
        if error:
            return ValidationResult(False, reason=error)

        sanitized: dict[str, Any] = {"id": fields.get("id")}
        checks = (
            ("name", MAX_NAME_LENGTH),
            ("system_prompt", self.config.max_message_length),
            ("role_description", MAX_ROLE_DESCRIPTION_LENGTH),
        )
        for key, limit in checks:
            value = fields.get(key)
            if value is None:
                sanitized[key] = "" if key == "system_prompt" else None
                continue
            checked = self._check_content(value, f"worker.{key}", limit)
            if not checked.is_valid:
                return checked
            sanitized[key] = checked.sanitized_content

        return ValidationResult(True, sanitized_content=WorkerContext(**sanitized))


def create_strict_validator() -> InputValidator:
    return InputValidator(ValidationConfig.strict())


def create_permissive_validator() -> InputValidator:
    return InputValidator(ValidationConfig.permissive())
