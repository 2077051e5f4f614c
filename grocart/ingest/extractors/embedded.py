"""Locate structured data embedded in HTML pages."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


def extract_embedded_state(html: str, variable: str) -> Optional[Dict[str, Any]]:
    """
    Extract a ``window.<variable> = {...}`` assignment from a page's scripts.

    Common in React applications (__PRELOADED_STATE__, __INITIAL_STATE__).
    """
    tree = HTMLParser(html)
    pattern = re.compile(rf"{re.escape(variable)}\s*=\s*")

    for script in tree.css("script"):
        text = script.text()
        if not text or variable not in text:
            continue
        match = pattern.search(text)
        if not match:
            continue
        try:
            state, _ = _decoder.raw_decode(text, match.end())
        except json.JSONDecodeError as e:
            logger.debug(f"Failed to decode {variable}: {e}")
            continue
        if isinstance(state, dict):
            return state
    return None


def extract_next_data(html: str) -> Optional[Dict[str, Any]]:
    """Extract the __NEXT_DATA__ script tag content (Next.js pages)."""
    tree = HTMLParser(html)
    node = tree.css_first("script#__NEXT_DATA__")
    if node is None:
        return None
    try:
        return json.loads(node.text())
    except json.JSONDecodeError as e:
        logger.debug(f"Failed to extract __NEXT_DATA__: {e}")
        return None


def extract_json_ld(html: str) -> List[Dict[str, Any]]:
    """Return every JSON-LD object on the page, flattening top-level arrays and @graph."""
    results: List[Dict[str, Any]] = []
    tree = HTMLParser(html)
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.text())
        except json.JSONDecodeError:
            continue
        for obj in data if isinstance(data, list) else [data]:
            if not isinstance(obj, dict):
                continue
            if isinstance(obj.get("@graph"), list):
                results.extend(o for o in obj["@graph"] if isinstance(o, dict))
            else:
                results.append(obj)
    return results
