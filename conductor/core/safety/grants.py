"""Session-scoped "always allow" grants for categories and tools."""

import structlog

from conductor.core.safety.permissions import ToolCategory, get_tool_category

logger = structlog.get_logger()


class SessionGrants:
    def __init__(self) -> None:
        self.categories: set[ToolCategory] = set()
        self.tools: set[str] = set()

    def grant_category(self, category: ToolCategory) -> None:
        if category not in self.categories:
            self.categories.add(category)
            logger.info("session_grant_category", category=category.value)

    def grant_tool(self, tool_name: str) -> None:
        if tool_name not in self.tools:
            self.tools.add(tool_name)
            logger.info("session_grant_tool", tool_name=tool_name)

    def is_granted(self, tool_name: str) -> bool:
        if tool_name in self.tools:
            return True
        category = get_tool_category(tool_name)
        return category is not None and category in self.categories

    def reset(self) -> None:
        self.categories.clear()
        self.tools.clear()
        logger.info("session_grants_reset")

    def snapshot(self) -> dict[str, list[str]]:
        return {
            "categories": sorted(c.value for c in self.categories),
            "tools": sorted(self.tools),
        }
