from sandbox_agent.tools.templates import SCAFFOLDS, ScaffoldGenerator
from sandbox_agent.tools.web import WebSearcher, is_weather_query, web_search_tool_enabled

__all__ = [
    "SCAFFOLDS",
    "ScaffoldGenerator",
    "WebSearcher",
    "is_weather_query",
    "web_search_tool_enabled",
]
