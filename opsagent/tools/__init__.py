"""Tool catalog: definitions, results and the registry that dispatches them."""
from .base import ApprovalCategory, RegisteredTool, ToolDefinition, ToolHandler, ToolResult, create_tool
from .registry import ToolRegistry
