"""Discord client that hosts the voice recorder."""

from __future__ import annotations

import discord

from services.common.config import ConfigError
from services.common.structured_logging import get_logger

from .config import BotConfig
from .connector import VoiceChannelConnector
from .models import SessionResult
from .recorder import VoiceRecorder


class CaptureBot(discord.Client):
    """Gateway client; optionally joins one voice channel and records every speaker."""

    def __init__(self, config: BotConfig, recorder: VoiceRecorder | None = None) -> None:
        super().__init__(intents=self._build_intents())
        self.config = config
        self.recorder = recorder or VoiceRecorder(
            VoiceChannelConnector(config.discord), config.capture
        )
        self._logger = get_logger(__name__, service_name="voice_capture")

    @staticmethod
    def _build_intents() -> discord.Intents:
        intents = discord.Intents.none()
        intents.guilds = True
        intents.voice_states = True
        return intents

    async def on_ready(self) -> None:
        self._logger.info(
            "discord.ready",
            user=str(self.user),
            guilds=[guild.id for guild in self.guilds],
            opus_loaded=discord.opus.is_loaded(),
        )
        if not self.config.discord.auto_join:
            return
        channel = self._configured_channel()
        if channel is None:
            return
        try:
            await self.recorder.start_auto_capture(channel, on_result=self._log_result)
        except Exception as exc:
            self._logger.exception(
                "discord.auto_capture_failed",
                guild_id=self.config.discord.guild_id,
                channel_id=self.config.discord.voice_channel_id,
                error=str(exc),
            )

    def _configured_channel(self) -> discord.VoiceChannel | None:
        guild_id = self.config.discord.guild_id
        channel_id = self.config.discord.voice_channel_id
        guild = self.get_guild(guild_id)
        channel = guild.get_channel(channel_id) if guild else None
        if not isinstance(channel, discord.VoiceChannel):
            self._logger.error(
                "discord.voice_channel_unavailable",
                guild_id=guild_id,
                channel_id=channel_id,
                guild_found=guild is not None,
            )
            return None
        return channel

    def _log_result(self, result: SessionResult) -> None:
        if result.captured:
            self._logger.info("discord.capture_saved", **result.to_dict())
        else:
            self._logger.info("discord.capture_empty", **result.to_dict())

    async def close(self) -> None:
        try:
            await self.recorder.shutdown()
        finally:
            await super().close()


async def run_bot(config: BotConfig) -> None:
    """Log in and run until the gateway connection ends."""
    token = config.discord.token
    if not token:
        raise ConfigError("DISCORD_BOT_TOKEN is required to run the bot")
    async with CaptureBot(config) as bot:
        await bot.start(token)


__all__ = ["CaptureBot", "run_bot"]
