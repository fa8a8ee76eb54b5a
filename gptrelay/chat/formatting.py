"""Outbound text shaping — chunking, paragraph re-flow, MarkdownV2, keyboards.

Telegram rejects messages longer than 4096 characters, renders only its own
MarkdownV2 dialect, and shows reply keyboards as rows of labels. This module
turns a raw completion answer into what can actually be sent.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import telegramify_markdown
from telegram import KeyboardButton, ReplyKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import BadRequest

if TYPE_CHECKING:
    from collections.abc import Sequence

    from telegram import Bot, Message

    from gptrelay.models import ButtonConfig

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than 4096 characters.
TELEGRAM_MAX_MESSAGE_LEN: int = 4096

# A prompt containing this phrase asks for the answer in paragraphs.
PARAGRAPH_TRIGGER: str = "абзацами"

# A paragraph is closed once it reaches this many characters.
PARAGRAPH_MIN_LEN: int = 200

_SENTENCE_END_RE = re.compile(r"(?<=[.!?…])\s+")


# ── Chunking ──────────────────────────────────────────────────────────────────


def split_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Split text into chunks of at most ``limit`` characters on line boundaries.

    Lines are accumulated in order; a chunk is closed before the line that
    would push it over the limit. Each line keeps its newline, so joining the
    chunks gives back the input exactly. A single line longer than the limit
    is hard-split.

    Empty input yields one empty chunk so the caller always has something to send.
    """
    if not text:
        return [""]

    chunks: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if current and len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        while len(line) > limit:
            chunks.append(line[:limit])
            line = line[limit:]
        current += line
    if current:
        chunks.append(current)
    return chunks


# ── Paragraph mode ────────────────────────────────────────────────────────────


def extract_paragraph_mode(text: str) -> tuple[str, bool]:
    """Strip the paragraph trigger phrase from a prompt.

    Returns:
        ``(prompt, requested)`` — the prompt without the phrase, and whether
        it was present.
    """
    pattern = re.compile(re.escape(PARAGRAPH_TRIGGER), re.IGNORECASE)
    if not pattern.search(text):
        return text, False
    stripped = re.sub(r"[ \t]{2,}", " ", pattern.sub("", text)).strip()
    return stripped, True


def paragraphize(text: str, min_length: int = PARAGRAPH_MIN_LEN) -> str:
    """Re-flow text into paragraphs of whole sentences, each ≥ ``min_length`` chars.

    Sentences end at ``.``, ``!``, ``?`` or ``…`` followed by whitespace. The
    last paragraph may be shorter. Paragraphs are separated by a blank line.
    """
    sentences = [s for s in _SENTENCE_END_RE.split(text.strip()) if s]
    paragraphs: list[str] = []
    current = ""
    for sentence in sentences:
        current = f"{current} {sentence}" if current else sentence
        if len(current) >= min_length:
            paragraphs.append(current)
            current = ""
    if current:
        paragraphs.append(current)
    return "\n\n".join(paragraphs)


# ── Markdown ──────────────────────────────────────────────────────────────────


def to_markdown_v2(text: str) -> str:
    """Convert provider Markdown into Telegram MarkdownV2."""
    return telegramify_markdown.markdownify(text)


# ── Keyboard ──────────────────────────────────────────────────────────────────


def keyboard_rows(buttons: Sequence[ButtonConfig]) -> list[list[str]]:
    """Button labels grouped by row index (1-based), config order within a row.

    Rows nobody uses are dropped rather than sent empty.
    """
    rows: dict[int, list[str]] = {}
    for button in buttons:
        rows.setdefault(max(button.row, 1), []).append(button.name)
    return [rows[index] for index in sorted(rows)]


def build_keyboard(buttons: Sequence[ButtonConfig]) -> ReplyKeyboardMarkup | None:
    """Reply keyboard for a chat's buttons, None when there are none."""
    rows = keyboard_rows(buttons)
    if not rows:
        return None
    return ReplyKeyboardMarkup(
        [[KeyboardButton(label) for label in row] for row in rows],
        resize_keyboard=True,
    )


# ── Sending ───────────────────────────────────────────────────────────────────


async def send_chunks(
    bot: Bot,
    chat_id: int,
    text: str,
    *,
    markdown: bool = False,
    **params: Any,
) -> list[Message]:
    """Send ``text`` as one or more messages, in order.

    With ``markdown=True`` each chunk is converted to MarkdownV2 on its own.
    A chunk Telegram refuses to parse, or one that escaping pushed over the
    limit, is sent as the original plain text instead. Delivery is not
    atomic: each chunk is an independent send.
    """
    chunks = split_message(text)
    if len(chunks) > 1:
        logger.info("Split into %d messages", len(chunks))

    sent: list[Message] = []
    for chunk in chunks:
        if not chunk.strip():
            continue
        if markdown:
            converted = to_markdown_v2(chunk)
            if len(converted) <= TELEGRAM_MAX_MESSAGE_LEN:
                try:
                    sent.append(
                        await bot.send_message(
                            chat_id=chat_id,
                            text=converted,
                            parse_mode=ParseMode.MARKDOWN_V2,
                            **params,
                        )
                    )
                    continue
                except BadRequest:
                    logger.warning(
                        "Could not send a chunk as MarkdownV2, retrying as plain text",
                        exc_info=True,
                    )
        sent.append(await bot.send_message(chat_id=chat_id, text=chunk, **params))
    return sent
