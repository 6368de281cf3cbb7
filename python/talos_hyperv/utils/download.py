"""
talos_hyperv/utils/download.py

Fetches the Talos boot image into a local cache path if it is not already there.
The body is streamed to a sibling `.part` file and renamed into place only once
complete, so an interrupted download never leaves a truncated image behind.
"""

from __future__ import annotations

import asyncio
import logging
import os

import aiofiles
import aiohttp

from talos_hyperv.errors import PreconditionError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


async def ensure_boot_image(url: str, path: str, timeout: float = 1800.0) -> bool:
    """
    Download `url` to `path` unless `path` already exists.

    Returns:
        True if a download happened, False if the cached file was reused.

    Raises:
        PreconditionError: On HTTP or connection failures, so create stops
            before any VM exists.
    """
    if os.path.isfile(path) and os.path.getsize(path) > 0:
        logger.info("Boot image already present at %s", path)
        return False

    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    partial = path + ".part"

    logger.info("Downloading boot image %s -> %s", url, path)
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                async with aiofiles.open(partial, mode="wb") as f:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        await f.write(chunk)
        os.replace(partial, path)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise PreconditionError(f"Could not download boot image {url}: {exc}") from exc
    finally:
        if os.path.exists(partial):
            os.remove(partial)

    logger.info("Boot image saved (%d bytes)", os.path.getsize(path))
    return True
