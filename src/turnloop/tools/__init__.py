"""Tool definitions."""

from turnloop.tools.base import FunctionTool, Tool, ToolContext, ToolDescriptor, schema_from_signature, tool

__all__ = ["FunctionTool", "Tool", "ToolContext", "ToolDescriptor", "schema_from_signature", "tool"]
