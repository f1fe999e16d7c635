"""Tests for Discord alerting (monitoring/alerts.py)."""
import pytest

from topicvault.config import settings
from topicvault.monitoring import alerts


@pytest.fixture
def posted(monkeypatch):
    sent = []

    async def fake_post(url, payload):
        sent.append((url, payload))

    monkeypatch.setattr(alerts, "_post", fake_post)
    return sent


class TestAlerts:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_noop_without_webhook(self, posted):
        await alerts.send_alert("hello")
        assert posted == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_failed_export_alert(self, posted, monkeypatch):
        monkeypatch.setattr(settings, "DISCORD_WEBHOOK_URL", "https://discord.test/hook")

        await alerts.alert_export_failed("abcdef123456", "Readers", "Cache error: locked")

        [(url, payload)] = posted
        embed = payload["embeds"][0]
        assert url == "https://discord.test/hook"
        assert "`abcdef12`" in embed["description"]
        assert "[Readers]" in embed["description"]
        assert "Cache error: locked" in embed["description"]
        assert embed["color"] == 0xE74C3C

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_completed_export_alert(self, posted, monkeypatch):
        monkeypatch.setattr(settings, "DISCORD_WEBHOOK_URL", "https://discord.test/hook")

        await alerts.alert_export_completed("abcdef123456", "Readers", 42, "Readers.zip")

        embed = posted[0][1]["embeds"][0]
        assert "42 topics" in embed["description"]
        assert embed["color"] == 0x2ECC71

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_malformed_webhook_url_is_only_logged(self, monkeypatch):
        monkeypatch.setattr(settings, "DISCORD_WEBHOOK_URL", "http://[::1/hook")

        await alerts.alert_export_failed("abcdef123456", "Readers", "boom")
