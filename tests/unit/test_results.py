"""
Unit tests for the sports results source.
"""
import httpx
import pytest

from arbiter.core.retry import ResultUnavailable
from arbiter.integrations.results import HttpResultSource


def source_answering(status: int, body, seen=None) -> HttpResultSource:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body)

    return HttpResultSource(
        "https://results.example",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


class TestHttpResultSource:
    """Tests for result_of."""

    @pytest.mark.asyncio
    async def test_final_winner(self):
        seen = []
        source = source_answering(200, {"status": "final", "winner": "Lakers"}, seen)

        assert await source.result_of("basketball", "Lakers", "Celtics") == "Lakers"
        await source.close()

        request = seen[0]
        assert request.url.path == "/results"
        assert request.url.params["team1"] == "Lakers"
        assert request.url.params["team2"] == "Celtics"
        assert request.headers["x-api-key"] == "secret"

    @pytest.mark.asyncio
    async def test_draw_passed_through(self):
        source = source_answering(200, {"status": "FT", "winner": "draw"})
        assert await source.result_of("soccer", "Arsenal", "Chelsea") == "draw"
        await source.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,body",
        [
            (200, {"status": "in_progress", "winner": None}),
            (200, {"status": "final"}),
            (200, {"status": "scheduled", "winner": "Lakers"}),
            (404, {"error": "unknown fixture"}),
            (503, {"error": "maintenance"}),
            (200, [{"status": "final", "winner": "Lakers"}]),
            (200, "final"),
        ],
    )
    async def test_undecided_or_failed_raises(self, status, body):
        source = source_answering(status, body)
        with pytest.raises(ResultUnavailable):
            await source.result_of("basketball", "Lakers", "Celtics")
        await source.close()
