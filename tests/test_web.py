import unittest

import httpx

from sandbox_agent.domain.errors import UpstreamError
from sandbox_agent.tools.web import (
    WebSearcher,
    is_weather_query,
    normalize_results,
    weather_location,
    web_search_tool_enabled,
)


class TestWebHelpers(unittest.TestCase):
    def test_tool_switch(self):
        self.assertTrue(web_search_tool_enabled({}))
        self.assertTrue(web_search_tool_enabled({"ENABLE_WEB_SEARCH_TOOL": "1"}))
        self.assertFalse(web_search_tool_enabled({"ENABLE_WEB_SEARCH_TOOL": "0"}))
        self.assertFalse(web_search_tool_enabled({"ENABLE_WEB_SEARCH_TOOL": "off"}))

    def test_weather_detection_and_location(self):
        self.assertTrue(is_weather_query("Weather in Paris today"))
        self.assertFalse(is_weather_query("python asyncio tutorial"))
        self.assertEqual(weather_location("weather in Paris today"), "Paris")
        self.assertEqual(weather_location("realtime weather for Indianapolis"), "Indianapolis")

    def test_normalize_results_dedupes_and_limits(self):
        payload = {
            "Heading": "Python",
            "AbstractText": "Python is a language.",
            "AbstractURL": "https://example.org/python",
            "RelatedTopics": [
                {"Text": "Python - snake", "FirstURL": "https://example.org/snake"},
                {"Topics": [{"Text": "Dup", "FirstURL": "https://example.org/python"}]},
                {"Text": "No url"},
            ],
        }
        rows = normalize_results(payload, limit=5)
        self.assertEqual([r["url"] for r in rows], ["https://example.org/python", "https://example.org/snake"])
        self.assertEqual(rows[1]["title"], "Python")
        self.assertEqual(len(normalize_results(payload, limit=1)), 1)


class TestWebSearcher(unittest.IsolatedAsyncioTestCase):
    async def test_weather_query_goes_to_wttr(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text="Paris: +12°C\n")

        searcher = WebSearcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        data = await searcher.search("weather in Paris")
        await searcher.aclose()

        self.assertEqual(data, {"type": "weather", "query": "weather in Paris", "location": "Paris", "data": "Paris: +12°C"})
        self.assertEqual(seen[0].url.host, "wttr.in")
        self.assertEqual(seen[0].url.path, "/Paris")
        self.assertEqual(seen[0].url.params["format"], "3")

    async def test_general_query_goes_to_duckduckgo(self):
        def handler(request):
            self.assertEqual(request.url.host, "api.duckduckgo.com")
            self.assertEqual(request.url.params["q"], "fastapi")
            return httpx.Response(200, json={"Answer": "A web framework"})

        searcher = WebSearcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        data = await searcher.search("fastapi")
        self.assertEqual(data["type"], "general")
        self.assertEqual(data["source"], "duckduckgo")
        self.assertEqual(data["results"], [{"title": "Answer", "url": "", "snippet": "A web framework"}])

    async def test_failures_raise_upstream_error(self):
        searcher = WebSearcher(
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404, text="nope")))
        )
        with self.assertRaises(UpstreamError) as ctx:
            await searcher.search("weather in Atlantis")
        self.assertIn("Failed to fetch weather", str(ctx.exception))
        with self.assertRaises(UpstreamError) as ctx:
            await searcher.search("anything")
        self.assertIn("Web search failed", str(ctx.exception))

    async def test_empty_query(self):
        with self.assertRaises(ValueError):
            await WebSearcher().search("  ")
