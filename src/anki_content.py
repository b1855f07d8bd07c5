"""
Anki field content helpers: legacy HTML entity decoding and media reference
rewriting.
"""

import logging
import re

from anki_schema import FIELD_SEPARATOR

logger = logging.getLogger(__name__)


# Entities Anki exports commonly contain. Anything else is left untouched.
LEGACY_ENTITIES = {
    '&nbsp;': ' ',
    '&amp;': '&',
    '&lt;': '<',
    '&gt;': '>',
    '&quot;': '"',
    '&#39;': "'",
    '&apos;': "'",
    '&cent;': '¢',
    '&pound;': '£',
    '&yen;': '¥',
    '&euro;': '€',
    '&copy;': '©',
    '&reg;': '®',
}

_NUMERIC_REF = re.compile(r'&#(?:(\d+)|[xX]([0-9A-Fa-f]+));')
_IMG_SRC = re.compile(r'<img([^>]*?)src=["\']?([^"\'>\s]+)["\']?([^>]*?)>', re.IGNORECASE)

MAX_CODE_POINT = 0x10FFFF


def _code_point(match):
    decimal, hexadecimal = match.groups()
    try:
        value = int(decimal, 10) if decimal is not None else int(hexadecimal, 16)
    except ValueError:
        return None
    return value if value <= MAX_CODE_POINT else None


def _is_high_surrogate(value):
    return value is not None and 0xD800 <= value <= 0xDBFF


def _is_low_surrogate(value):
    return value is not None and 0xDC00 <= value <= 0xDFFF


def _decode_numeric_refs(text):
    """
    Replaces &#NNN; and &#xHH; references.

    UTF-16 surrogate pairs written as two references become one character.
    Unpaired surrogates and values above U+10FFFF keep their original text.
    """
    matches = list(_NUMERIC_REF.finditer(text))
    if not matches:
        return text

    parts = []
    last_end = 0
    i = 0
    while i < len(matches):
        match = matches[i]
        parts.append(text[last_end:match.start()])
        value = _code_point(match)
        following = matches[i + 1] if i + 1 < len(matches) else None

        if (_is_high_surrogate(value) and following is not None and following.start() == match.end()
                and _is_low_surrogate(_code_point(following))):
            pair = chr(value) + chr(_code_point(following))
            parts.append(pair.encode('utf-16', 'surrogatepass').decode('utf-16'))
            last_end = following.end()
            i += 2
            continue

        if value is None or _is_high_surrogate(value) or _is_low_surrogate(value):
            parts.append(match.group(0))
        else:
            parts.append(chr(value))
        last_end = match.end()
        i += 1

    parts.append(text[last_end:])
    return ''.join(parts)


def decode_html_entities(text):
    """Decodes the legacy named entities plus numeric/hex character references."""
    if not text:
        return text
    for entity, char in LEGACY_ENTITIES.items():
        text = text.replace(entity, char)
    return _decode_numeric_refs(text)


def rewrite_media_urls(html, media_urls, unresolved=None):
    """
    Points <img src="..."> references at uploaded media.

    References with no entry in ``media_urls`` are left as-is and, when an
    ``unresolved`` list is given, recorded there.
    """
    if not html or '<img' not in html.lower():
        return html

    def replace(match):
        before, src, after = match.groups()
        public_url = media_urls.get(src)
        if public_url:
            return f'<img{before}src="{public_url}"{after}>'
        logger.warning(f"[ANKI IMPORT] No media file found for: {src}")
        if unresolved is not None:
            unresolved.append(src)
        return match.group(0)

    return _IMG_SRC.sub(replace, html)


def split_fields(flds):
    """Anki note fields are separated by the unit separator \\x1f."""
    return (flds or '').split(FIELD_SEPARATOR)
