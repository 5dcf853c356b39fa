"""Content sampler for text-derived fun stats.

Message bodies are far larger than metadata, so instead of scanning every
message this fetches a handful of random pages and estimates the longest
message, top emoji and top word from them. Results vary between runs.
"""

import logging
import math
import random
import re
from collections import Counter
from typing import Callable, Optional

from .models import MESSAGE_ORDER, ContentSample, EmojiStat, Lookups, LongestMessage, WordStat
from .store_client import StoreClient

logger = logging.getLogger(__name__)


STOP_WORDS = {
    'the', 'be', 'to', 'of', 'and', 'a', 'in', 'that', 'have', 'i', 'it', 'for',
    'not', 'on', 'with', 'he', 'as', 'you', 'do', 'at', 'this', 'but', 'his',
    'by', 'from', 'they', 'we', 'say', 'her', 'she', 'or', 'an', 'will', 'my',
    'one', 'all', 'would', 'there', 'their', 'what', 'so', 'up', 'out', 'if',
    'about', 'who', 'get', 'which', 'go', 'me', 'when', 'make', 'can', 'like',
    'time', 'no', 'just', 'him', 'know', 'take', 'people', 'into', 'year',
    'your', 'good', 'some', 'could', 'them', 'see', 'other', 'than', 'then',
    'now', 'look', 'only', 'come', 'its', 'over', 'think', 'also', 'back',
    'after', 'use', 'two', 'how', 'our', 'work', 'first', 'well', 'way',
    'even', 'new', 'want', 'because', 'any', 'these', 'give', 'day', 'most',
    'us', 'is', 'are', 'was', 'were', 'been', 'has', 'had', 'did', 'does',
    'am', 'im', "i'm", 'dont', "don't", 'cant', "can't", 'thats', "that's",
    'yeah', 'yes', 'ok', 'okay',
}

# One match per code point; sequences (ZWJ, skin tones, flags) are tallied
# component by component.
EMOJI_PATTERN = re.compile(
    "["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map symbols
    "\U0001F1E0-\U0001F1FF"  # flags
    "\U00002600-\U000026FF"  # misc symbols
    "\U00002700-\U000027BF"  # dingbats
    "\U0000FE00-\U0000FE0F"  # variation selectors
    "\U0001F900-\U0001F9FF"  # supplemental symbols
    "\U0001FA00-\U0001FA6F"  # chess symbols
    "\U0001FA70-\U0001FAFF"  # symbols and pictographs extended-a
    "\U0000200D"             # zero width joiner
    "\U000020E3"             # keycap
    "\U000E0020-\U000E007F"  # tags
    "]",
    flags=re.UNICODE
)

WORD_STRIP = re.compile(r"[^a-z0-9'-]")

MIN_WORD_LENGTH = 3


def choose_sample_pages(
    total_pages: int,
    sample_size: int = 10,
    rng: Optional[random.Random] = None,
) -> list[int]:
    """
    Pick distinct page indices uniformly at random.

    Args:
        total_pages: Number of pages in the table
        sample_size: Pages wanted
        rng: Random source (seed it for reproducible samples)

    Returns:
        min(sample_size, total_pages) distinct indices
    """
    if total_pages <= 0 or sample_size <= 0:
        return []
    rng = rng or random.Random()
    indices = list(range(total_pages))
    rng.shuffle(indices)
    return indices[:min(sample_size, total_pages)]


def derive_longest_message(samples: list[ContentSample], lookups: Lookups) -> Optional[LongestMessage]:
    """Longest sampled message by character count; earliest wins ties."""
    longest: Optional[ContentSample] = None
    for sample in samples:
        if sample.content and (longest is None or len(sample.content) > len(longest.content)):
            longest = sample

    if longest is None:
        return None
    return LongestMessage(chars=len(longest.content), username=lookups.member_name(longest.author_id))


def derive_most_used_emoji(samples: list[ContentSample]) -> Optional[EmojiStat]:
    emoji_counts: Counter = Counter()
    for sample in samples:
        if sample.content:
            emoji_counts.update(EMOJI_PATTERN.findall(sample.content))

    if not emoji_counts:
        return None
    emoji, count = emoji_counts.most_common(1)[0]
    return EmojiStat(emoji=emoji, count=count)


def tokenize_words(text: str) -> list[str]:
    """Lowercase, split on whitespace, strip punctuation, drop short and stop words."""
    words = []
    for token in text.lower().split():
        clean = WORD_STRIP.sub("", token)
        if len(clean) < MIN_WORD_LENGTH or clean in STOP_WORDS:
            continue
        words.append(clean)
    return words


def derive_most_used_word(samples: list[ContentSample]) -> Optional[WordStat]:
    word_counts: Counter = Counter()
    for sample in samples:
        if sample.content:
            word_counts.update(tokenize_words(sample.content))

    if not word_counts:
        return None
    word, count = word_counts.most_common(1)[0]
    return WordStat(word=word, count=count)


class ContentSampler:
    """Fetches a random sample of message bodies."""

    def __init__(
        self,
        client: StoreClient,
        table: str,
        sample_pages: int = 10,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the sampler.

        Args:
            client: Store client used for page fetches
            table: Messages table
            sample_pages: Number of pages to sample
            rng: Random source for page selection
        """
        self.client = client
        self.table = table
        self.sample_pages = sample_pages
        self.rng = rng or random.Random()

    def sample(
        self,
        total_messages: int,
        on_page_done: Optional[Callable[[int, int], None]] = None,
        cancel_event=None,
    ) -> list[ContentSample]:
        """
        Fetch the sampled pages.

        Args:
            total_messages: Row count of the messages table
            on_page_done: Called as (pages_done, pages_total)
            cancel_event: Optional threading.Event to abandon the fetch

        Returns:
            Content rows from all sampled pages
        """
        total_pages = math.ceil(total_messages / self.client.page_size)
        pages = choose_sample_pages(total_pages, self.sample_pages, self.rng)
        offsets = [page * self.client.page_size for page in pages]
        logger.info(f"Sampling {len(offsets)} of {total_pages} pages for content stats")

        samples: list[ContentSample] = []

        def collect(rows: list[dict]):
            samples.extend(ContentSample.from_row(r) for r in rows)

        def page_done(completed: int):
            if on_page_done:
                on_page_done(completed, len(offsets))

        self.client.fetch_pages(
            self.table,
            "content,author_id",
            offsets,
            collect,
            order=MESSAGE_ORDER,
            on_page_done=page_done,
            cancel_event=cancel_event,
        )

        logger.debug(f"Collected {len(samples)} content samples")
        return samples
