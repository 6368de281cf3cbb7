"""
talos_hyperv/utils/ephemeral_file.py

Async context manager that writes text to a file in a private temporary
directory, yields its path, and removes both on exit. Used for rendered Helm
values so nothing derived from cluster state is left on disk.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


@asynccontextmanager
async def ephemeral_file(
    content: str,
    *,
    file_name: str = "values.yaml",
    prefix: str = "talos-hv-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Args:
        content: Text to write.
        file_name: Name of the file inside the temporary directory.
        prefix: Prefix for the temporary directory name.
        parent_dir: Where to create the directory; defaults to the system temp dir.

    Yields:
        The absolute path of the written file.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    path = os.path.join(ephemeral_dir, file_name)
    try:
        async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
            await f.write(content)
        os.chmod(path, 0o600)
        yield path
    finally:
        if os.path.exists(path):
            os.remove(path)
        if os.path.isdir(ephemeral_dir):
            os.rmdir(ephemeral_dir)
