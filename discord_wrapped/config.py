"""Configuration schema and validation for Discord Wrapped."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Default channel families for category trends. A channel matches a pattern
# when its name equals the pattern or starts with pattern + "_" / "-".
DEFAULT_CATEGORY_PATTERNS: dict[str, list[str]] = {
    "sd": ["sd", "sdxl-turbo", "stable-cascade", "stable-video-diffusion", "stable-zero123"],
    "animatediff": ["animatediff", "ad_comfyui_dev", "ad_fine-tuning", "ad_sparsectrl", "ad_training", "longanimatediff"],
    "flux": ["flux", "flux_gens", "flux_resources", "flux_training", "flux_kontext"],
    "wan": ["wan_chatter", "wan_gens", "wan_training", "wan_resources", "wan_bot", "wan_comfyui"],
    "cogvideo": ["cogvideox", "cogvideox_gens", "cogvideox_training"],
    "hunyuan": ["hunyuanvideo", "hunyuanvideo_gens", "hunyuanvideo_training", "hunyuandit", "hunyuan_tech_support", "hunyuan3d", "hunyuanimage"],
    "ltx": ["ltx_chatter", "ltx_gens", "ltx_resources", "ltx_training", "ltxv_beta_testers", "ltxv_gens", "ltxv_h100", "ltxv_training"],
}

DEFAULT_MILESTONES: list[tuple[int, str]] = [
    (100_000, "The First 100K"),
    (250_000, "Scaling Up"),
    (500_000, "Halfway There!"),
    (750_000, "Exponential Growth"),
    (1_000_000, "THE MILLION!"),
]


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass
class StoreConfig:
    """Connection settings for the remote row store."""

    url: str
    api_key: str
    messages_table: str = "discord_messages"
    members_table: str = "discord_members"
    channels_table: str = "discord_channels"
    timeout: int = 60


@dataclass
class FetchSettings:
    """Paging, concurrency and retry settings."""

    page_size: int = 1000
    concurrency: int = 5
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds


@dataclass
class AwardSettings:
    """Tuning constants for the time-of-day and volume awards."""

    min_messages: int = 100
    night_owl_hour: float = 3.0
    early_bird_hour: float = 6.0
    late_night_start: int = 0  # inclusive, UTC
    late_night_end: int = 5  # inclusive, UTC
    gratitude_keyword: str = "thank"


@dataclass
class SamplingSettings:
    """Content sampler settings."""

    sample_pages: int = 10
    seed: Optional[int] = None


@dataclass
class MediaSettings:
    """Settings for the per-month curated media phase."""

    enabled: bool = True
    per_month: int = 5
    min_reactions: int = 3
    announcements_channel_id: str = "1138790534987661363"


@dataclass
class WrappedConfig:
    """Complete configuration for a Discord Wrapped run."""

    store: StoreConfig
    fetch: FetchSettings = field(default_factory=FetchSettings)
    awards: AwardSettings = field(default_factory=AwardSettings)
    sampling: SamplingSettings = field(default_factory=SamplingSettings)
    media: MediaSettings = field(default_factory=MediaSettings)
    milestones: list[tuple[int, str]] = field(default_factory=lambda: list(DEFAULT_MILESTONES))
    category_patterns: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CATEGORY_PATTERNS.items()}
    )
    highlighted_offset: int = 999_999

    @property
    def categories(self) -> list[str]:
        """Category names in table order."""
        return list(self.category_patterns.keys())

    @classmethod
    def from_dict(cls, data: dict) -> "WrappedConfig":
        """Create WrappedConfig from dictionary."""
        store_data = data.get("store", {})
        if not store_data.get("url"):
            raise ConfigError("Config missing required field: store.url")
        if not store_data.get("apiKey"):
            raise ConfigError("Config missing required field: store.apiKey")

        store = StoreConfig(
            url=store_data["url"].rstrip("/"),
            api_key=store_data["apiKey"],
            messages_table=store_data.get("messagesTable", "discord_messages"),
            members_table=store_data.get("membersTable", "discord_members"),
            channels_table=store_data.get("channelsTable", "discord_channels"),
            timeout=int(store_data.get("timeout", 60)),
        )

        fetch_data = data.get("fetch", {})
        fetch = FetchSettings(
            page_size=int(fetch_data.get("pageSize", 1000)),
            concurrency=int(fetch_data.get("concurrency", 5)),
            max_attempts=int(fetch_data.get("maxAttempts", 3)),
            base_delay=float(fetch_data.get("baseDelay", 1.0)),
        )

        awards_data = data.get("awards", {})
        awards = AwardSettings(
            min_messages=int(awards_data.get("minMessages", 100)),
            night_owl_hour=float(awards_data.get("nightOwlHour", 3.0)),
            early_bird_hour=float(awards_data.get("earlyBirdHour", 6.0)),
            late_night_start=int(awards_data.get("lateNightStart", 0)),
            late_night_end=int(awards_data.get("lateNightEnd", 5)),
            gratitude_keyword=awards_data.get("gratitudeKeyword", "thank"),
        )

        sampling_data = data.get("sampling", {})
        seed = sampling_data.get("seed")
        sampling = SamplingSettings(
            sample_pages=int(sampling_data.get("samplePages", 10)),
            seed=int(seed) if seed is not None else None,
        )

        media_data = data.get("media", {})
        enabled = media_data.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ConfigError("media.enabled must be true or false")
        media = MediaSettings(
            enabled=enabled,
            per_month=int(media_data.get("perMonth", 5)),
            min_reactions=int(media_data.get("minReactions", 3)),
            announcements_channel_id=str(
                media_data.get("announcementsChannelId", MediaSettings.announcements_channel_id)
            ),
        )

        # Milestones are [{count, label}] objects, kept in threshold order
        milestones = list(DEFAULT_MILESTONES)
        if "milestones" in data:
            milestones = [
                (int(m["count"]), m.get("label", f"{int(m['count']):,} messages"))
                for m in data["milestones"]
            ]
            milestones.sort(key=lambda m: m[0])

        category_patterns = data.get("categories")
        if category_patterns is None:
            category_patterns = {k: list(v) for k, v in DEFAULT_CATEGORY_PATTERNS.items()}

        return cls(
            store=store,
            fetch=fetch,
            awards=awards,
            sampling=sampling,
            media=media,
            milestones=milestones,
            category_patterns=category_patterns,
            highlighted_offset=int(data.get("highlightedOffset", 999_999)),
        )

    @classmethod
    def load(cls, filepath: str) -> "WrappedConfig":
        """Load configuration from JSON file."""
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        with open(path, "r") as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_env(cls, overrides: Optional[dict] = None) -> "WrappedConfig":
        """
        Build configuration from environment variables.

        Reads WRAPPED_STORE_URL and WRAPPED_STORE_KEY (a .env file is
        honoured), then applies any dictionary overrides.

        Args:
            overrides: Optional config dictionary merged over the env values

        Returns:
            WrappedConfig instance
        """
        load_dotenv()

        data = dict(overrides or {})
        store = dict(data.get("store", {}))
        store.setdefault("url", os.getenv("WRAPPED_STORE_URL", ""))
        store.setdefault("apiKey", os.getenv("WRAPPED_STORE_KEY", ""))
        concurrency = os.getenv("WRAPPED_CONCURRENCY")
        if concurrency:
            data.setdefault("fetch", {}).setdefault("concurrency", concurrency)
        data["store"] = store

        return cls.from_dict(data)


class ConfigValidator:
    """Validates configuration dictionaries."""

    def __init__(self):
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def validate(self, data: dict) -> tuple[bool, list[str], list[str]]:
        """
        Validate a config dictionary.

        Returns:
            Tuple of (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        store = data.get("store")
        if not isinstance(store, dict):
            self.errors.append("Missing required field: store")
        else:
            if not store.get("url"):
                self.errors.append("Missing required field: store.url")
            elif not str(store["url"]).startswith(("http://", "https://")):
                self.errors.append("store.url must be an http(s) URL")
            if not store.get("apiKey"):
                self.errors.append("Missing required field: store.apiKey")

        fetch = data.get("fetch", {})
        if not isinstance(fetch, dict):
            self.errors.append("fetch must be an object")
        else:
            for key in ("pageSize", "concurrency", "maxAttempts"):
                if key in fetch:
                    try:
                        if int(fetch[key]) < 1:
                            self.errors.append(f"fetch.{key} must be at least 1")
                    except (ValueError, TypeError):
                        self.errors.append(f"fetch.{key} must be a number")
            if "concurrency" in fetch:
                try:
                    if int(fetch["concurrency"]) > 20:
                        self.warnings.append("fetch.concurrency above 20 is likely to be rate limited")
                except (ValueError, TypeError):
                    pass

        awards = data.get("awards", {})
        if isinstance(awards, dict):
            for key in ("nightOwlHour", "earlyBirdHour"):
                if key in awards:
                    try:
                        hour = float(awards[key])
                        if hour < 0 or hour >= 24:
                            self.errors.append(f"awards.{key} must be in [0, 24)")
                    except (ValueError, TypeError):
                        self.errors.append(f"awards.{key} must be a number")

        if "milestones" in data:
            milestones = data["milestones"]
            if not isinstance(milestones, list):
                self.errors.append("milestones must be an array")
            else:
                counts = []
                for i, m in enumerate(milestones):
                    if not isinstance(m, dict) or "count" not in m:
                        self.errors.append(f"milestones[{i}] must be an object with a count")
                        continue
                    counts.append(m["count"])
                    if not m.get("label"):
                        self.warnings.append(f"milestones[{i}] missing label")
                if len(set(counts)) != len(counts):
                    self.errors.append("milestones contain duplicate counts")

        if "categories" in data:
            categories = data["categories"]
            if not isinstance(categories, dict):
                self.errors.append("categories must be an object")
            else:
                for name, patterns in categories.items():
                    if not isinstance(patterns, list) or not patterns:
                        self.warnings.append(f"categories.{name} has no channel patterns")

        media = data.get("media", {})
        if not isinstance(media, dict):
            self.errors.append("media must be an object")
        elif "enabled" in media and not isinstance(media["enabled"], bool):
            self.errors.append("media.enabled must be true or false")

        is_valid = len(self.errors) == 0
        return is_valid, self.errors, self.warnings
