"""Tool permission rules and the pure resolver that applies them.

Tools fall into risk categories (read, edit, execute, mcp). Each category
carries a policy of allow, ask or deny, and per-tool policies override the
category. Interactive and planning tools are always allowed.
"""

from enum import StrEnum
from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from conductor.exceptions import ConfigError

logger = structlog.get_logger()


class ToolCategory(StrEnum):
    READ = "read"
    EDIT = "edit"
    EXECUTE = "execute"
    MCP = "mcp"


class PermissionPolicy(StrEnum):
    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


TOOL_CATEGORY_MAP: dict[str, ToolCategory] = {
    "view": ToolCategory.READ,
    "search_content": ToolCategory.READ,
    "find_files": ToolCategory.READ,
    "web_search": ToolCategory.READ,
    "web-search": ToolCategory.READ,
    "web_extract": ToolCategory.READ,
    "web-extract": ToolCategory.READ,
    "string_replace_lsp": ToolCategory.EDIT,
    "ast_smart_edit": ToolCategory.EDIT,
    "write_file": ToolCategory.EDIT,
    "subagent": ToolCategory.EDIT,
    "execute_command": ToolCategory.EXECUTE,
}

ALWAYS_ALLOW_TOOLS = frozenset(
    {
        "ask_user",
        "task_write",
        "task_check",
        "submit_plan",
        "request_sandbox_access",
    }
)

DEFAULT_POLICIES: dict[ToolCategory, PermissionPolicy] = {
    ToolCategory.READ: PermissionPolicy.ALLOW,
    ToolCategory.EDIT: PermissionPolicy.ASK,
    ToolCategory.EXECUTE: PermissionPolicy.ASK,
    ToolCategory.MCP: PermissionPolicy.ASK,
}

YOLO_POLICIES: dict[ToolCategory, PermissionPolicy] = {
    category: PermissionPolicy.ALLOW for category in ToolCategory
}


def get_tool_category(tool_name: str) -> ToolCategory | None:
    """Category for *tool_name*, or None for tools that never need approval."""
    if tool_name in ALWAYS_ALLOW_TOOLS:
        return None
    return TOOL_CATEGORY_MAP.get(tool_name, ToolCategory.MCP)


class PermissionRules(BaseModel):
    categories: dict[ToolCategory, PermissionPolicy] = Field(default_factory=dict)
    tools: dict[str, PermissionPolicy] = Field(default_factory=dict)

    @classmethod
    def defaults(cls) -> "PermissionRules":
        return cls(categories=dict(DEFAULT_POLICIES))

    def merged(self, other: "PermissionRules") -> "PermissionRules":
        """Return a copy with *other*'s entries layered on top."""
        return PermissionRules(
            categories={**self.categories, **other.categories},
            tools={**self.tools, **other.tools},
        )


def resolve_permission(
    tool_name: str, rules: PermissionRules, *, yolo: bool = False
) -> PermissionPolicy:
    """Decide allow/ask/deny for a tool call without consulting session grants.

    Order: unconditional-allow flag, per-tool rule, always-allowed tools,
    category rule, then ``ask``.
    """
    if yolo:
        return PermissionPolicy.ALLOW
    if tool_name in rules.tools:
        return rules.tools[tool_name]
    category = get_tool_category(tool_name)
    if category is None:
        return PermissionPolicy.ALLOW
    return rules.categories.get(category, PermissionPolicy.ASK)


def load_permission_rules(
    paths: list[Path], base: PermissionRules | None = None
) -> PermissionRules:
    """Layer YAML rule files over *base* (defaults when omitted); later files win."""
    rules = base if base is not None else PermissionRules.defaults()
    for path in paths:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read permission rules {path}: {e}") from e
        try:
            layer = PermissionRules.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid permission rules in {path}: {e}") from e
        rules = rules.merged(layer)
        logger.info(
            "permission_rules_loaded",
            path=str(path),
            categories=len(layer.categories),
            tools=len(layer.tools),
        )
    return rules
