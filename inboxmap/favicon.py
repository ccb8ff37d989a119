"""
Favicon Enricher - Upgrades fallback domain colors with favicon colors
"""

import asyncio
import io
import logging
from collections import Counter
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
from PIL import Image

from inboxmap.errors import EnrichmentFailure
from inboxmap.models import DomainColorInfo, EnrichmentConfig
from inboxmap.colors import rgb_to_hex


logger = logging.getLogger(__name__)


def extract_dominant_color(image_bytes: bytes, sample_size: int = 32) -> str:
    """Most frequent quantized color of an image, ignoring transparent, white and black pixels"""
    with Image.open(io.BytesIO(image_bytes)) as image:
        sampled = image.convert('RGBA').resize((sample_size, sample_size))
        raw = sampled.tobytes()

    frequencies = Counter()
    for i in range(0, len(raw), 4):
        r, g, b, a = raw[i], raw[i + 1], raw[i + 2], raw[i + 3]

        if a < 128:
            continue
        if r > 240 and g > 240 and b > 240:
            continue
        if r < 15 and g < 15 and b < 15:
            continue

        frequencies[(r // 16 * 16, g // 16 * 16, b // 16 * 16)] += 1

    if not frequencies:
        raise ValueError("No usable colors found")

    (r, g, b), _ = frequencies.most_common(1)[0]
    return rgb_to_hex(r, g, b)


class FaviconSource:
    """Downloads favicons from a primary provider with a secondary fallback"""

    def __init__(self, config: Optional[EnrichmentConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or EnrichmentConfig()
        self.client = client
        self._owns_client = client is None
        self._users = 0

    async def __aenter__(self) -> 'FaviconSource':
        self._users += 1
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.config.timeout, follow_redirects=True)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._users -= 1
        if self._owns_client and self._users == 0 and self.client is not None:
            await self.client.aclose()
            self.client = None

    def candidate_urls(self, domain: str) -> List[str]:
        return [
            self.config.primary_url.format(domain=domain),
            self.config.fallback_url.format(domain=domain)
        ]

    async def download(self, url: str) -> bytes:
        response = await self.client.get(url)
        response.raise_for_status()
        return response.content


class ColorEnricher:
    """Samples favicons for domains in small concurrent batches"""

    def __init__(self, source: FaviconSource, config: Optional[EnrichmentConfig] = None):
        self.source = source
        self.config = config or source.config

    # === Main Entry Point ===

    async def enrich(
        self,
        domains: List[str],
        on_result: Callable[[str, DomainColorInfo], Awaitable[None]],
        is_current: Callable[[], bool] = lambda: True
    ) -> Dict[str, DomainColorInfo]:
        """
        Enrich domains batch by batch, handing each success to on_result as it lands.

        Stops delivering results as soon as is_current() turns false.
        """
        results: Dict[str, DomainColorInfo] = {}
        if not domains:
            return results

        logger.info(f"Enriching colors for {len(domains)} domains")

        async with self.source:
            for start in range(0, len(domains), self.config.concurrency):
                batch = domains[start:start + self.config.concurrency]
                for attempt in asyncio.as_completed([self._attempt(domain) for domain in batch]):
                    domain, info = await attempt
                    if not is_current():
                        logger.info("Enrichment run is stale, dropping remaining results")
                        return results
                    if info is None:
                        continue
                    results[domain] = info
                    await on_result(domain, info)

        logger.info(f"Enriched {len(results)} of {len(domains)} domains")
        return results

    # === Per-Domain ===

    async def _attempt(self, domain: str):
        try:
            return domain, await self.enrich_domain(domain)
        except Exception as e:
            logger.warning(f"Keeping fallback color for {domain}: {e}")
            return domain, None

    async def enrich_domain(self, domain: str) -> DomainColorInfo:
        """Try each favicon provider in turn until one yields a usable color"""
        last_error = None

        for url in self.source.candidate_urls(domain):
            try:
                image_bytes = await self.source.download(url)
                color = await asyncio.to_thread(extract_dominant_color, image_bytes, self.config.sample_size)
                logger.debug(f"Sampled {color} for {domain} from {url}")
                return DomainColorInfo(color=color, favicon_url=url)
            except (httpx.HTTPError, OSError, ValueError) as error:
                logger.debug(f"Favicon {url} unusable: {error}")
                last_error = error

        raise EnrichmentFailure(domain, str(last_error))
