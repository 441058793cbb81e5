"""Extract a draw.io document from raw model output and validate it.

Model output is noisy: the XML may sit inside a fenced block, behind a
sentence of prose, or arrive HTML-escaped. ``normalize`` peels those layers
off; ``validate`` accepts a document if either a strict XML parse succeeds
or the text has a recognisable draw.io root tag.
"""

import logging
import re
import xml.etree.ElementTree as ET

from ..errors import DocumentInvalidError

logger = logging.getLogger(__name__)

ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\u2060]")
FENCED_XML_RE = re.compile(r"```\s*xml\s*([\s\S]*?)```", re.IGNORECASE)
FENCED_ANY_RE = re.compile(r"```\s*([\s\S]*?)```")
RAW_TAG_RE = re.compile(r"<[a-z!?]", re.IGNORECASE)
ESCAPED_TAG_RE = re.compile(r"&lt;\s*[a-z!?]", re.IGNORECASE)
DRAWIO_ROOT_RE = re.compile(r"<(mxfile|mxGraphModel|diagram)[\s>]", re.IGNORECASE)

# Order matters: "&amp;" must not be decoded before "&lt;"/"&gt;"
ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&apos;", "'"),
)

PARSER_ERROR_TAG = "parsererror"


def normalize(raw: str) -> str:
    if not raw:
        return ""

    text = raw.replace("\ufeff", "")
    text = ZERO_WIDTH_RE.sub("", text)

    match = FENCED_XML_RE.search(text)
    if not (match and match.group(1)):
        match = FENCED_ANY_RE.search(text)
    if match and match.group(1):
        text = match.group(1)

    text = text.strip()

    if not RAW_TAG_RE.search(text) and ESCAPED_TAG_RE.search(text):
        for entity, char in ENTITIES:
            text = text.replace(entity, char)

    first_lt = text.find("<")
    if first_lt > 0:
        text = text[first_lt:]

    return text.strip()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def is_well_formed(document: str) -> bool:
    """Structural tier: a strict XML parse with no parser-error marker."""
    try:
        root = ET.fromstring(document)
    except ET.ParseError:
        return False
    return not any(_local_name(el.tag) == PARSER_ERROR_TAG for el in root.iter())


def looks_like_drawio(document: str) -> bool:
    """Heuristic tier: a known draw.io root tag followed by whitespace or '>'."""
    return DRAWIO_ROOT_RE.search(document) is not None


def validate(document: str) -> bool:
    if not document:
        return False
    if is_well_formed(document):
        return True
    if looks_like_drawio(document):
        logger.info("Accepting document that failed strict parsing but has a draw.io root tag")
        return True
    return False


def extract_document(raw: str) -> str:
    """Normalize and validate, raising DocumentInvalidError on rejection."""
    document = normalize(raw)
    if not validate(document):
        raise DocumentInvalidError(code="INVALID_DOCUMENT")
    return document
