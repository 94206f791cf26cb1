"""Best-effort title lookup through YouTube's public oEmbed endpoint."""

import logging

import httpx

logger = logging.getLogger("ytaudio.metadata")

OEMBED_URL = "https://www.youtube.com/oembed"
UNKNOWN_TITLE = "Unknown Title"


async def fetch_title(
    source_url: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """
    Look up the display title for a video page.

    Never raises: any network error, non-2xx status or malformed body
    yields "Unknown Title" so a failed lookup cannot abort resolution.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.get(OEMBED_URL, params={"url": source_url, "format": "json"})
            if response.status_code != 200:
                logger.warning(f"oEmbed lookup returned {response.status_code}")
                return UNKNOWN_TITLE
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"oEmbed lookup failed: {e}")
        return UNKNOWN_TITLE

    title = data.get("title") if isinstance(data, dict) else None
    if not isinstance(title, str) or not title.strip():
        return UNKNOWN_TITLE
    return title.strip()
