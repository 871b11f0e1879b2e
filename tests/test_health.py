"""Health endpoint integration test."""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from character_tools.api.dependencies import default_rate_limit
from character_tools.domain.ports.config import AppConfig, SecurityConfig
from character_tools.main import app


@pytest.mark.asyncio
async def test_health_returns_ok():
    """Health endpoint returns status and LLM availability."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["service"] == "character-tools"
    assert data["llm_provider"] in ("ollama", "lm_studio", "openai")
    assert isinstance(data["llm_available"], bool)


def test_health_limit_follows_config():
    """/health is limited by security.rate_limit_requests_per_minute."""
    config = AppConfig(security=SecurityConfig(rate_limit_requests_per_minute=7))
    with patch("character_tools.api.dependencies.get_config", return_value=config):
        assert default_rate_limit() == "7/minute"
    with patch("character_tools.api.dependencies.get_config", return_value=AppConfig()):
        assert default_rate_limit() == "100/minute"
