"""
Node Directory

Fetches the list of edge nodes from the registry endpoint. Any failure
degrades to an empty list so a harvest cycle becomes a no-op instead of
crashing.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .config import NODE_LIST_URL, NODE_LIST_TIMEOUT_SECONDS

log = logging.getLogger("AbuseMonitor.NodeDirectory")


@dataclass(frozen=True)
class Node:
    address: str
    category: int
    country: str = ''


def parse_node(entry: Dict[str, Any]) -> Optional[Node]:
    """Builds a Node from a registry entry, or None if the entry is unusable."""
    if not isinstance(entry, dict):
        return None
    address = entry.get('ip') or entry.get('address')
    if not isinstance(address, str) or not address.strip():
        return None
    try:
        category = int(entry.get('category'))
    except (TypeError, ValueError):
        return None
    country = entry.get('country') or entry.get('countryCode') or entry.get('country_code') or ''
    return Node(address=address.strip(), category=category, country=str(country).strip().upper())


class NodeDirectory:
    def __init__(self, session: aiohttp.ClientSession, url: str = NODE_LIST_URL,
                 timeout: float = NODE_LIST_TIMEOUT_SECONDS):
        self.session = session
        self.url = url
        self.timeout = timeout

    async def fetch(self) -> List[Node]:
        try:
            async with self.session.get(self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    log.warning(f"Node directory returned status {resp.status}; no nodes this cycle.")
                    return []
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.warning(f"Node directory request timed out after {self.timeout}s; no nodes this cycle.")
            return []
        except (aiohttp.ClientError, ValueError) as e:
            log.error(f"Error fetching nodes: {e}")
            return []

        if not isinstance(payload, list):
            log.warning(f"Node directory payload has unexpected type {type(payload).__name__}.")
            return []

        nodes = [node for node in (parse_node(entry) for entry in payload) if node is not None]
        dropped = len(payload) - len(nodes)
        log.info(f"Node directory returned {len(nodes)} nodes" + (f" ({dropped} malformed entries dropped)." if dropped else "."))
        return nodes
