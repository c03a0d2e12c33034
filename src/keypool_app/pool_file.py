import json
import logging
import os
from typing import List, Tuple

import aiofiles

from keypool.models import KeyPolicy, KeyRecord

logger = logging.getLogger(__name__)


async def load_pool_file(file_path: str) -> Tuple[List[KeyRecord], KeyPolicy]:
    """
    Loads a pool and its policy from a JSON file asynchronously.

    A missing or unreadable file yields an empty pool and the default policy.
    Individual malformed key entries are skipped with a warning.
    """
    if not os.path.exists(file_path):
        return [], KeyPolicy()
    try:
        async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
            content = await f.read()
        data = json.loads(content)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not read pool file '{file_path}': {e}. Starting empty.")
        return [], KeyPolicy()

    if not isinstance(data, dict):
        logger.warning(f"Pool file '{file_path}' is not a JSON object. Starting empty.")
        return [], KeyPolicy()

    keys = []
    for entry in data.get("keys") or []:
        try:
            keys.append(KeyRecord.from_dict(entry))
        except ValueError as e:
            logger.warning(f"Skipping malformed key entry in '{file_path}': {e}")
    return keys, KeyPolicy.from_dict(data.get("policy"))


async def save_pool_file(file_path: str, pool: List[KeyRecord], policy: KeyPolicy):
    """Saves the pool and policy to a JSON file asynchronously."""
    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    payload = {
        "policy": policy.to_dict(),
        "keys": [key.to_dict() for key in pool],
    }
    async with aiofiles.open(file_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(payload, indent=2, ensure_ascii=False))
