"""Bubbles: realtime chat core.

Server side (FastAPI + DuckDB): ``bubbles.chat``, ``bubbles.files``,
``bubbles.auth``. Client side (asyncio + websockets + httpx):
``bubbles.client``.
"""

__version__ = "0.1.0"
