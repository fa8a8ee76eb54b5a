"""gptrelay Telegram chat integration layer.

Public API:
  build_application  — construct a fully-wired PTB Application
  handle_message     — the main message handler (for testing / custom wiring)
  dispatch           — run the pipeline for one normalized inbound message
  split_message      — split long responses for Telegram's message limit

Typical usage:
    from gptrelay.chat import build_application
    app = build_application(provider, client)
    app.run_polling()
"""

from gptrelay.chat.bot import build_application
from gptrelay.chat.formatting import split_message
from gptrelay.chat.handlers import dispatch, handle_message

__all__ = [
    "build_application",
    "dispatch",
    "handle_message",
    "split_message",
]
