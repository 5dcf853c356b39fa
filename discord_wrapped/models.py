"""Data models for Discord Wrapped.

Row records decoded at the fetch boundary, lookup tables, and the
immutable report structure handed to the presentation layer.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
import json
import re


# Total order over messages; offset paging needs a unique tiebreaker
MESSAGE_ORDER = "created_at.asc,message_id.asc"

FRACTIONAL_SECONDS = re.compile(r"\.(\d+)")


def _pad_fraction(match: "re.Match") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO timestamp from the store, normalized to UTC.

    Postgres trims trailing zeros from fractional seconds ("...:31.12+00:00"),
    which datetime.fromisoformat rejects before Python 3.11, so the fraction
    is padded to six digits first.
    """
    value = FRACTIONAL_SECONDS.sub(_pad_fraction, value.replace("Z", "+00:00"), count=1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ============================================================================
# Row records
# ============================================================================

@dataclass
class MessageMeta:
    """Metadata projection of a message used by the full scan."""

    author_id: str
    channel_id: str
    created_at: str
    reference_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "MessageMeta":
        """Create from a raw store row."""
        reference_id = row.get("reference_id")
        return cls(
            author_id=str(row["author_id"]),
            channel_id=str(row["channel_id"]),
            created_at=row["created_at"],
            reference_id=str(reference_id) if reference_id else None,
        )


@dataclass
class ContentSample:
    """Content projection of a message used by the sampler."""

    content: str
    author_id: str

    @classmethod
    def from_row(cls, row: dict) -> "ContentSample":
        """Create from a raw store row."""
        return cls(
            content=row.get("content") or "",
            author_id=str(row.get("author_id") or ""),
        )


@dataclass
class MessageBrief:
    """A single message shown as-is in the report."""

    author_id: str
    channel_id: str
    content: str
    created_at: str

    @classmethod
    def from_row(cls, row: dict) -> "MessageBrief":
        """Create from a raw store row."""
        return cls(
            author_id=str(row.get("author_id") or ""),
            channel_id=str(row.get("channel_id") or ""),
            content=row.get("content") or "",
            created_at=row.get("created_at") or "",
        )


@dataclass
class Attachment:
    """A message attachment."""

    url: str
    content_type: str = ""


@dataclass
class MediaPost:
    """A reacted message with attachments, candidate for curated media."""

    message_id: str
    author_id: str
    channel_id: str
    created_at: str
    reaction_count: int
    attachments: list[Attachment] = field(default_factory=list)
    content: str = ""

    @classmethod
    def from_row(cls, row: dict) -> "MediaPost":
        """
        Create from a raw store row.

        Attachments without a usable URL are dropped; non-list attachment
        payloads yield an empty list.
        """
        attachments = []
        raw_attachments = row.get("attachments")
        if isinstance(raw_attachments, list):
            for raw in raw_attachments:
                if not isinstance(raw, dict):
                    continue
                url = raw.get("url") or raw.get("proxy_url")
                if not url:
                    continue
                attachments.append(Attachment(
                    url=url,
                    content_type=(raw.get("content_type") or "").lower(),
                ))

        return cls(
            message_id=str(row.get("message_id") or ""),
            author_id=str(row.get("author_id") or ""),
            channel_id=str(row.get("channel_id") or ""),
            created_at=row.get("created_at") or "",
            reaction_count=int(row.get("reaction_count") or 0),
            attachments=attachments,
            content=row.get("content") or "",
        )


@dataclass
class Member:
    """A server member."""

    member_id: str
    username: str
    global_name: Optional[str] = None
    server_nick: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Nickname, then global name, then username."""
        return self.server_nick or self.global_name or self.username

    @classmethod
    def from_row(cls, row: dict) -> "Member":
        """Create from a raw store row."""
        return cls(
            member_id=str(row["member_id"]),
            username=row.get("username") or "",
            global_name=row.get("global_name"),
            server_nick=row.get("server_nick"),
            avatar_url=row.get("avatar_url"),
        )


@dataclass
class Channel:
    """A server channel."""

    channel_id: str
    channel_name: str

    @property
    def display_name(self) -> str:
        return f"#{self.channel_name}"

    @classmethod
    def from_row(cls, row: dict) -> "Channel":
        """Create from a raw store row."""
        return cls(
            channel_id=str(row["channel_id"]),
            channel_name=row.get("channel_name") or "",
        )


@dataclass(frozen=True)
class Lookups:
    """Read-only id -> display data tables, built once per run."""

    member_names: dict[str, str] = field(default_factory=dict)
    member_avatars: dict[str, str] = field(default_factory=dict)
    channel_names: dict[str, str] = field(default_factory=dict)
    channel_raw_names: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, members: list[Member], channels: list[Channel]) -> "Lookups":
        """Build lookup tables from member and channel rows."""
        return cls(
            member_names={m.member_id: m.display_name for m in members},
            member_avatars={m.member_id: m.avatar_url for m in members if m.avatar_url},
            channel_names={c.channel_id: c.display_name for c in channels},
            channel_raw_names={c.channel_id: c.channel_name for c in channels},
        )

    def member_name(self, member_id: str) -> str:
        """Display name for a member id, falling back to the id."""
        return self.member_names.get(member_id) or member_id

    def channel_name(self, channel_id: str) -> str:
        """Display name for a channel id, falling back to the id."""
        return self.channel_names.get(channel_id) or channel_id


# ============================================================================
# Report fragments
# ============================================================================

@dataclass(frozen=True)
class DateRange:
    start: str
    end: str


@dataclass(frozen=True)
class Milestone:
    """First day the cumulative message count crossed a threshold."""

    count: int
    date: str
    days_from_start: int
    label: str = ""

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "date": self.date,
            "daysFromStart": self.days_from_start,
            "label": self.label,
        }


@dataclass(frozen=True)
class CumulativePoint:
    date: str
    cumulative: int


@dataclass(frozen=True)
class Contributor:
    """Leaderboard entry."""

    rank: int
    username: str
    messages: int
    avatar: str
    avatar_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "username": self.username,
            "messages": self.messages,
            "avatar": self.avatar,
            "avatarUrl": self.avatar_url,
        }


@dataclass(frozen=True)
class Award:
    """An award winner; count awards and time-of-day awards share this shape."""

    username: str
    count: Optional[int] = None
    metric: Optional[str] = None
    avg_time: Optional[str] = None
    timezone: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"username": self.username}
        if self.count is not None:
            result["count"] = self.count
        if self.metric is not None:
            result["metric"] = self.metric
        if self.avg_time is not None:
            result["avgTime"] = self.avg_time
        if self.timezone is not None:
            result["timezone"] = self.timezone
        return result


@dataclass(frozen=True)
class Awards:
    most_helpful: Optional[Award] = None
    most_thankful: Optional[Award] = None
    night_owl: Optional[Award] = None
    early_bird: Optional[Award] = None
    all_nighter: Optional[Award] = None

    def to_dict(self) -> dict:
        def convert(award: Optional[Award]) -> Optional[dict]:
            return award.to_dict() if award else None

        return {
            "mostHelpful": convert(self.most_helpful),
            "mostThankful": convert(self.most_thankful),
            "nightOwl": convert(self.night_owl),
            "earlyBird": convert(self.early_bird),
            "allNighter": convert(self.all_nighter),
        }


@dataclass(frozen=True)
class CategoryTrend:
    """Percentage share of each category for one month."""

    month: str
    shares: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"month": self.month, **self.shares}


@dataclass(frozen=True)
class HeatmapRow:
    """Messages per weekday (Monday first) for one three-hour bucket."""

    hour: int
    data: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ChannelStat:
    name: str
    messages: int
    percentage: int


@dataclass(frozen=True)
class LongestMessage:
    chars: int
    username: str


@dataclass(frozen=True)
class RepliedThread:
    replies: int
    topic: str
    message_id: str = ""

    def to_dict(self) -> dict:
        return {"replies": self.replies, "topic": self.topic, "messageId": self.message_id}


@dataclass(frozen=True)
class BusiestDay:
    date: str
    messages: int
    reason: str = "Peak activity day"


@dataclass(frozen=True)
class EmojiStat:
    emoji: str
    count: int


@dataclass(frozen=True)
class WordStat:
    word: str
    count: int


@dataclass(frozen=True)
class FunStats:
    longest_message: Optional[LongestMessage] = None
    most_replied_thread: Optional[RepliedThread] = None
    busiest_day: Optional[BusiestDay] = None
    most_used_emoji: Optional[EmojiStat] = None
    most_used_word: Optional[WordStat] = None

    def to_dict(self) -> dict:
        return {
            "longestMessage": asdict(self.longest_message) if self.longest_message else None,
            "mostRepliedThread": self.most_replied_thread.to_dict() if self.most_replied_thread else None,
            "busiestDay": asdict(self.busiest_day) if self.busiest_day else None,
            "mostUsedEmoji": asdict(self.most_used_emoji) if self.most_used_emoji else None,
            "mostUsedWord": asdict(self.most_used_word) if self.most_used_word else None,
        }


@dataclass(frozen=True)
class HighlightedMessage:
    """A single spotlighted message, e.g. the millionth one."""

    author: str
    channel: str
    content: str
    timestamp: str
    avatar_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "author": self.author,
            "channel": self.channel,
            "content": self.content,
            "timestamp": self.timestamp,
            "avatarUrl": self.avatar_url,
        }


@dataclass(frozen=True)
class TopMedia:
    """A highly reacted media post for one month."""

    month: str
    message_id: str
    author: str
    avatar_url: str
    channel: str
    created_at: str
    reaction_count: int
    media_url: str
    media_type: str  # "image", "video" or "gif"
    content: str = ""

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "message_id": self.message_id,
            "author": self.author,
            "avatarUrl": self.avatar_url,
            "channel": self.channel,
            "created_at": self.created_at,
            "reaction_count": self.reaction_count,
            "mediaUrl": self.media_url,
            "mediaType": self.media_type,
            "content": self.content,
        }


# ============================================================================
# Report
# ============================================================================

@dataclass(frozen=True)
class WrappedReport:
    """
    The complete year-in-review report.

    Instances are immutable; each pipeline phase produces a new instance
    via dataclasses.replace so partial snapshots stay valid.
    """

    total_messages: int = 0
    total_members: int = 0
    total_channels: int = 0
    date_range: Optional[DateRange] = None
    milestones: tuple[Milestone, ...] = ()
    cumulative_messages: tuple[CumulativePoint, ...] = ()
    top_contributors: tuple[Contributor, ...] = ()
    awards: Awards = field(default_factory=Awards)
    category_trends: tuple[CategoryTrend, ...] = ()
    activity_heatmap: tuple[HeatmapRow, ...] = ()
    channel_stats: tuple[ChannelStat, ...] = ()
    fun_stats: FunStats = field(default_factory=FunStats)
    highlighted_message: Optional[HighlightedMessage] = None
    top_media: tuple[TopMedia, ...] = ()
    generated_at: str = ""

    def to_dict(self) -> dict:
        """Convert to the camelCase JSON shape used by the presentation layer."""
        return {
            "totalMessages": self.total_messages,
            "totalMembers": self.total_members,
            "totalChannels": self.total_channels,
            "dateRange": asdict(self.date_range) if self.date_range else None,
            "milestones": [m.to_dict() for m in self.milestones],
            "cumulativeMessages": [asdict(p) for p in self.cumulative_messages],
            "topContributors": [c.to_dict() for c in self.top_contributors],
            "awards": self.awards.to_dict(),
            "modelTrends": [t.to_dict() for t in self.category_trends],
            "activityHeatmap": [asdict(h) for h in self.activity_heatmap],
            "channelStats": [asdict(c) for c in self.channel_stats],
            "funStats": self.fun_stats.to_dict(),
            "millionthMessage": self.highlighted_message.to_dict() if self.highlighted_message else None,
            "topGenerations": [m.to_dict() for m in self.top_media],
            "generatedAt": self.generated_at,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    def save(self, output_path: Union[Path, str]) -> Path:
        """Save the report as JSON and return the written path."""
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_json())

        return path
