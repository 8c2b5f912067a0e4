"""Voice capture service configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from services.common.config import BaseConfig, FieldDefinition, LoggingConfig


class DiscordConfig(BaseConfig):
    """Discord gateway and voice connection settings."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="token",
                field_type=str,
                default="",
                description="Discord bot token",
                env_var="DISCORD_BOT_TOKEN",
            ),
            FieldDefinition(
                name="guild_id",
                field_type=int,
                default=0,
                description="Guild joined on startup when auto_join is enabled",
                env_var="DISCORD_GUILD_ID",
                min_value=0,
            ),
            FieldDefinition(
                name="voice_channel_id",
                field_type=int,
                default=0,
                description="Voice channel joined on startup when auto_join is enabled",
                env_var="DISCORD_VOICE_CHANNEL_ID",
                min_value=0,
            ),
            FieldDefinition(
                name="auto_join",
                field_type=bool,
                default=False,
                description="Join the configured voice channel and capture every speaker",
                env_var="DISCORD_AUTO_JOIN",
            ),
            FieldDefinition(
                name="voice_connect_timeout_seconds",
                field_type=float,
                default=15.0,
                description="Timeout for a single voice connect attempt",
                env_var="DISCORD_VOICE_CONNECT_TIMEOUT",
                min_value=1.0,
                max_value=120.0,
            ),
            FieldDefinition(
                name="voice_connect_max_attempts",
                field_type=int,
                default=3,
                description="Voice connect attempts before giving up",
                env_var="DISCORD_VOICE_CONNECT_ATTEMPTS",
                min_value=1,
                max_value=10,
            ),
            FieldDefinition(
                name="voice_reconnect_initial_backoff_seconds",
                field_type=float,
                default=1.0,
                description="Initial delay between voice connect attempts",
                env_var="DISCORD_VOICE_RECONNECT_BASE_DELAY",
                min_value=0.0,
                max_value=60.0,
            ),
            FieldDefinition(
                name="voice_reconnect_max_backoff_seconds",
                field_type=float,
                default=10.0,
                description="Upper bound for the delay between voice connect attempts",
                env_var="DISCORD_VOICE_RECONNECT_MAX_DELAY",
                min_value=0.0,
                max_value=300.0,
            ),
            FieldDefinition(
                name="idle_disconnect_seconds",
                field_type=float,
                default=1800.0,
                description="Leave the voice channel after this long without activity (0 disables)",
                env_var="DISCORD_IDLE_DISCONNECT_SECONDS",
                min_value=0.0,
            ),
        ]


class CaptureConfig(BaseConfig):
    """Recording pipeline settings."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="recordings_dir",
                field_type=str,
                default="recordings",
                description="Directory that receives finalized WAV files",
                env_var="CAPTURE_RECORDINGS_DIR",
            ),
            FieldDefinition(
                name="channels",
                field_type=int,
                default=2,
                description="Decoded channel count",
                env_var="CAPTURE_CHANNELS",
                choices=[1, 2],
            ),
            FieldDefinition(
                name="sample_rate",
                field_type=int,
                default=48000,
                description="Decoded sample rate in Hz",
                env_var="CAPTURE_SAMPLE_RATE",
                choices=[8000, 12000, 16000, 24000, 48000],
            ),
            FieldDefinition(
                name="bits_per_sample",
                field_type=int,
                default=16,
                description="Container sample width; decoded PCM is signed 16-bit",
                env_var="CAPTURE_BITS_PER_SAMPLE",
                choices=[16],
            ),
            FieldDefinition(
                name="silence_gap_ms",
                field_type=int,
                default=300,
                description="Silence that ends an automatically started capture",
                env_var="CAPTURE_SILENCE_GAP_MS",
                min_value=20,
                max_value=60000,
            ),
            FieldDefinition(
                name="default_duration_seconds",
                field_type=float,
                default=5.0,
                description="Length of an on-demand capture when none is given",
                env_var="CAPTURE_DEFAULT_DURATION",
                min_value=0.1,
                max_value=3600.0,
            ),
            FieldDefinition(
                name="max_session_seconds",
                field_type=float,
                default=300.0,
                description="Hard cap on any capture, including manual ones",
                env_var="CAPTURE_MAX_SESSION_SECONDS",
                min_value=1.0,
                max_value=86400.0,
            ),
            FieldDefinition(
                name="first_speaker_timeout_seconds",
                field_type=float,
                default=30.0,
                description="How long to wait for anyone to speak in first-speaker mode",
                env_var="CAPTURE_FIRST_SPEAKER_TIMEOUT",
                min_value=0.1,
                max_value=3600.0,
            ),
            FieldDefinition(
                name="near_silent_ratio",
                field_type=float,
                default=0.95,
                description="Fraction of zero samples that marks a frame as near-silent",
                env_var="CAPTURE_NEAR_SILENT_RATIO",
                min_value=0.0,
                max_value=1.0,
            ),
            FieldDefinition(
                name="progress_log_interval",
                field_type=int,
                default=50,
                description="Log capture progress every N frames",
                env_var="CAPTURE_PROGRESS_LOG_INTERVAL",
                min_value=1,
            ),
        ]

    @property
    def recordings_path(self) -> Path:
        return Path(self.recordings_dir)


@dataclass
class BotConfig:
    """All configuration sections used by the capture bot."""

    discord: DiscordConfig
    capture: CaptureConfig
    logging: LoggingConfig


def load_config() -> BotConfig:
    """Load every section from the environment."""
    return BotConfig(
        discord=DiscordConfig(),
        capture=CaptureConfig(),
        logging=LoggingConfig(),
    )


__all__ = [
    "BotConfig",
    "CaptureConfig",
    "DiscordConfig",
    "LoggingConfig",
    "load_config",
]
