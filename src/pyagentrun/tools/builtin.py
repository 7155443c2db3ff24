from __future__ import annotations

from .base import ToolDescriptor, from_tool
from .registry import BUILTIN_BUNDLE, ToolBundle, ToolRegistry

from .builtin_tools.glob_tool import GlobTool
from .builtin_tools.grep_tool import GrepTool
from .builtin_tools.file_read import ReadFileTool
from .builtin_tools.file_write import WriteFileTool
from .builtin_tools.file_edit import EditFileTool
from .builtin_tools.bash_tool import BashTool
from .builtin_tools.websearch_tool import WebSearchTool

BUILTIN_VERSION = "0.1.0"


def builtin_descriptors(*, search_api_key: str | None = None, search_url: str | None = None) -> list[ToolDescriptor]:
    tools = [
        GlobTool(),
        GrepTool(),
        ReadFileTool(),
        WriteFileTool(),
        EditFileTool(),
        BashTool(),
    ]
    if search_api_key:
        search = WebSearchTool(api_key=search_api_key)
        if search_url:
            search.url = search_url
        tools.append(search)
    return [from_tool(t) for t in tools]


def register_builtin_tools(registry: ToolRegistry, *, search_api_key: str | None = None, search_url: str | None = None) -> ToolBundle:
    return registry.register(
        BUILTIN_BUNDLE,
        builtin_descriptors(search_api_key=search_api_key, search_url=search_url),
        version=BUILTIN_VERSION,
    )
