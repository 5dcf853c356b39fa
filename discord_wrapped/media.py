"""Curated media: the most reacted image/video posts of each month."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional
from urllib.parse import urlsplit

from .config import MediaSettings
from .models import Lookups, MediaPost, TopMedia
from .store_client import Filter, StoreClient, StoreError

logger = logging.getLogger(__name__)

VIDEO_SUFFIXES = (".mp4", ".webm", ".mov")
GIF_SUFFIXES = (".gif",)


def month_range(start_date: str, end_date: str) -> list[str]:
    """All YYYY-MM months from start_date's month through end_date's, inclusive."""
    months = []
    year, month = int(start_date[:4]), int(start_date[5:7])
    end = end_date[:7]
    current = f"{year:04d}-{month:02d}"
    while current <= end:
        months.append(current)
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        current = f"{year:04d}-{month:02d}"
    return months


def next_month(month: str) -> str:
    year, mon = int(month[:4]), int(month[5:7])
    if mon == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{mon + 1:02d}"


def classify_media(url: str, content_type: str = "") -> str:
    """
    Classify an attachment as "video", "gif" or "image".

    Content type wins; otherwise the URL path suffix decides (query strings
    on CDN links are ignored).
    """
    content_type = (content_type or "").lower()
    path = urlsplit(url).path.lower()
    if "video" in content_type or path.endswith(VIDEO_SUFFIXES):
        return "video"
    if "gif" in content_type or path.endswith(GIF_SUFFIXES):
        return "gif"
    return "image"


class MediaCurator:
    """Finds the top reacted media posts for each month."""

    def __init__(
        self,
        client: StoreClient,
        table: str,
        settings: Optional[MediaSettings] = None,
        concurrency: int = 5,
    ):
        self.client = client
        self.table = table
        self.settings = settings or MediaSettings()
        self.concurrency = concurrency

    def _month_filters(self, month: str) -> list[Filter]:
        filters = [
            Filter.neq("attachments", "[]"),
            Filter.gte("reaction_count", self.settings.min_reactions),
            Filter.gte("created_at", f"{month}-01T00:00:00"),
            Filter.lt("created_at", f"{next_month(month)}-01T00:00:00"),
        ]
        if self.settings.announcements_channel_id:
            filters.append(Filter.neq("channel_id", self.settings.announcements_channel_id))
        return filters

    def fetch_month(self, month: str, lookups: Lookups) -> list[TopMedia]:
        """
        Top posts for one month.

        Posts without a usable attachment URL are skipped.

        Raises:
            StoreError: If the month query fails
        """
        page = self.client.fetch_page(
            self.table,
            select="message_id,author_id,channel_id,created_at,reaction_count,attachments,content",
            filters=self._month_filters(month),
            order="reaction_count.desc,message_id.asc",
            limit=self.settings.per_month,
        )

        results = []
        for row in page.rows:
            post = MediaPost.from_row(row)
            if not post.attachments:
                logger.debug(f"Skipping post {post.message_id}: no usable attachment")
                continue
            attachment = post.attachments[0]
            results.append(TopMedia(
                month=month,
                message_id=post.message_id,
                author=lookups.member_name(post.author_id),
                avatar_url=lookups.member_avatars.get(post.author_id, ""),
                channel=lookups.channel_name(post.channel_id),
                created_at=post.created_at,
                reaction_count=post.reaction_count,
                media_url=attachment.url,
                media_type=classify_media(attachment.url, attachment.content_type),
                content=post.content,
            ))
        return results

    def curate(
        self,
        start_date: str,
        end_date: str,
        lookups: Lookups,
        on_month_done: Optional[Callable[[int, int], None]] = None,
    ) -> list[TopMedia]:
        """
        Fetch top media for every month in the date range, in parallel.

        A month whose query fails is logged and skipped; the rest still
        contribute.

        Args:
            start_date: First date (YYYY-MM-DD)
            end_date: Last date (YYYY-MM-DD)
            lookups: Member/channel display data
            on_month_done: Called as (months_done, months_total)

        Returns:
            Top media ordered by month, then by reaction count
        """
        months = month_range(start_date, end_date)
        if not months:
            return []

        by_month: dict[str, list[TopMedia]] = {}
        completed = 0

        with ThreadPoolExecutor(max_workers=max(1, min(self.concurrency, len(months)))) as executor:
            futures = {executor.submit(self.fetch_month, month, lookups): month for month in months}

            for future in as_completed(futures):
                month = futures[future]
                completed += 1
                try:
                    by_month[month] = future.result()
                except StoreError as e:
                    logger.warning(f"Failed to fetch top media for {month}: {e}")
                if on_month_done:
                    on_month_done(completed, len(months))

        results = []
        for month in months:
            results.extend(by_month.get(month, []))

        logger.info(f"Found {len(results)} top media posts across {len(months)} months")
        return results
