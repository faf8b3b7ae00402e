"""
Feature Extraction

Turns raw request text and file descriptors into a DomainFeatures record:
keywords, plain words, regex-detected entities, unit tokens, document shape,
section headers, citation styles and file extensions.

Every function here is pure and never raises; text with no usable signal
yields an empty-but-valid DomainFeatures.
"""

import dataclasses
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from cartridge_engine.models import DocShape, DomainFeatures, NamedEntity

logger = logging.getLogger(__name__)

ENTITY_CONFIDENCE = 0.8

MIN_KEYWORD_LENGTH = 4  # Keywords must be longer than 3 characters

WORD_PATTERN = re.compile(r"[a-z]+")

STOP_WORDS = {
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'is', 'are', 'was', 'were', 'be', 'been', 'have',
    'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could', 'should',
    'this', 'that', 'these', 'those', 'from', 'into', 'about', 'what',
    'which', 'when', 'where', 'there', 'their', 'them', 'then', 'than',
    'some', 'such', 'also', 'just', 'very', 'your', 'they', 'here',
}

# Entity families: label -> patterns. Families match independently, so one
# span may be tagged by more than one label.
ENTITY_PATTERNS = {
    "CHEMICAL": [
        re.compile(r'\b[A-Z][a-z]?(?:[0-9]+[a-z]*)*\b'),  # Formulas / element symbols
        re.compile(r'(?<!\w)(?:mol/L|M|g/mol|°C|K|pH|mmol|pKa|NMR)\b', re.IGNORECASE),
        re.compile(r'\b(?:catalyst|reagent|titration|molarity)\b', re.IGNORECASE),
    ],
    "SOFTWARE": [
        re.compile(r'\b(?:API|REST|GraphQL|JSON|HTTP|HTTPS|TCP|UDP)\b', re.IGNORECASE),
        re.compile(r'\b(?:throughput|latency|scalability|microservices?)\b', re.IGNORECASE),
        re.compile(r'\b(?:React|Node\.js|Python|TypeScript|JavaScript)\b', re.IGNORECASE),
    ],
    "ACADEMIC": [
        re.compile(r'\b(?:hypothes[ie]s|methodology|dissertation|thesis)\b', re.IGNORECASE),
        re.compile(r'\b(?:literature review|peer[- ]review(?:ed)?)\b', re.IGNORECASE),
    ],
}

UNIT_PATTERNS = [
    re.compile(r'(?<!\w)(?:mol/L|M|g/mol|mmol|μmol)\b', re.IGNORECASE),  # Concentration
    re.compile(r'(?<!\w)(?:°C|°F|K)\b', re.IGNORECASE),  # Temperature
    re.compile(r'\b(?:ms|μs|ns|seconds?|minutes?|hours?)\b', re.IGNORECASE),  # Time
    re.compile(r'\b(?:MB|GB|TB|kB|bytes?)\b', re.IGNORECASE),  # Data size
    re.compile(r'\b(?:Hz|kHz|MHz|GHz)\b', re.IGNORECASE),  # Frequency
    re.compile(r'\b(?:V|mV|A|mA|W|kW|MW)\b', re.IGNORECASE),  # Electrical
]

# Document shape rules, evaluated in order; first match wins.
IMRAD_SEQUENCES = [
    ['introduction', 'method', 'result', 'discussion'],
    ['abstract', 'introduction', 'conclusion'],
]
RFC_SEQUENCE = ['specification', 'implementation', 'security']
RFC_MARKERS = ['rfc', 'protocol']
MEMO_MARKERS = ['memorandum', 'to:', 'from:']
OUTLINE_MIN_ITEMS = 3  # More than 2 list items

NUMBERED_LINE = re.compile(r'^\d+\.', re.MULTILINE)
LETTERED_LINE = re.compile(r'^[A-Z]\.', re.MULTILINE)

MARKDOWN_HEADER = re.compile(r'^#{1,6}\s+(.+)$', re.MULTILINE)
CAPS_HEADER = re.compile(r'^[A-Z][A-Z \t]{2,}$', re.MULTILINE)

CITATION_PATTERNS = [
    ("numeric", re.compile(r'\[[0-9]+\]')),
    ("author_year", re.compile(r'\([A-Z][a-z]+,?\s+\d{4}\)')),
    ("academic", re.compile(r'et al\.', re.IGNORECASE)),
    ("rfc", re.compile(r'\[RFC\s*\d+\]', re.IGNORECASE)),
    ("policy", re.compile(r'\[policy_\w+#\w+\]')),
]


def _unique(items: Iterable[str]) -> tuple:
    """Deduplicate preserving first-seen order."""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return tuple(result)


def _contains_all(text: str, words: List[str]) -> bool:
    return all(word in text for word in words)


class FeatureExtractor:
    """Extracts DomainFeatures from text and file descriptors."""

    def extract_from_text(self, text: str) -> DomainFeatures:
        text = text or ""
        return DomainFeatures(
            keywords=self.extract_keywords(text),
            words=self.extract_words(text),
            named_entities=self.extract_named_entities(text),
            units_detected=self.extract_units(text),
            doc_shape=self.detect_doc_shape(text),
            section_headers=self.extract_section_headers(text),
            citation_patterns=self.extract_citation_patterns(text),
        )

    def extract_keywords(self, text: str) -> tuple:
        words = text.lower().split()
        return _unique(
            w for w in words
            if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS
        )

    def extract_words(self, text: str) -> tuple:
        """Every alphabetic token, lower-cased, with punctuation stripped. No length limit."""
        return _unique(WORD_PATTERN.findall(text.lower()))

    def extract_named_entities(self, text: str) -> tuple:
        entities = []
        for label, patterns in ENTITY_PATTERNS.items():
            for pattern in patterns:
                for match in pattern.finditer(text):
                    entities.append(
                        NamedEntity(text=match.group(0), label=label, confidence=ENTITY_CONFIDENCE)
                    )
        return tuple(entities)

    def extract_units(self, text: str) -> tuple:
        units = []
        for pattern in UNIT_PATTERNS:
            units.extend(m.group(0) for m in pattern.finditer(text))
        return _unique(units)

    def detect_doc_shape(self, text: str) -> DocShape:
        """
        Classify document structure. Exactly one shape is returned.

        Order: IMRaD -> RFC -> memo -> outline -> narrative.
        """
        lower = text.lower()

        if any(_contains_all(lower, seq) for seq in IMRAD_SEQUENCES):
            return DocShape.IMRAD

        if _contains_all(lower, RFC_SEQUENCE) or any(m in lower for m in RFC_MARKERS):
            return DocShape.RFC

        if any(m in lower for m in MEMO_MARKERS):
            return DocShape.MEMO

        if (len(NUMBERED_LINE.findall(text)) >= OUTLINE_MIN_ITEMS
                or len(LETTERED_LINE.findall(text)) >= OUTLINE_MIN_ITEMS):
            return DocShape.OUTLINE

        return DocShape.NARRATIVE

    def extract_section_headers(self, text: str) -> tuple:
        headers = [m.group(1).strip() for m in MARKDOWN_HEADER.finditer(text)]
        headers.extend(m.group(0).strip() for m in CAPS_HEADER.finditer(text))
        return tuple(headers)

    def extract_citation_patterns(self, text: str) -> tuple:
        return tuple(tag for tag, pattern in CITATION_PATTERNS if pattern.search(text))

    def extract_from_files(self, files: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        """
        Extract file-derived fields.

        Args:
            files: File descriptors with "name" and optional "content"/"metadata"

        Returns:
            Partial features: {"file_extensions": (...), "file_metadata": {...}}
        """
        extensions = []
        metadata: Dict[str, Any] = {}
        for f in files or []:
            name = str(f.get("name") or "")
            if not name:
                continue
            if "." in name.strip("."):
                extensions.append(name.rsplit(".", 1)[-1].lower())
            metadata[name] = f.get("metadata")

        return {
            "file_extensions": _unique(extensions),
            "file_metadata": metadata,
        }

    def extract(
        self,
        text: str,
        files: Optional[List[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> DomainFeatures:
        """Extract from text and files and merge the two."""
        features = merge_features(self.extract_from_text(text), self.extract_from_files(files))
        if context:
            features = dataclasses.replace(features, session_context=dict(context))
        return features


def merge_features(text_features: DomainFeatures, file_features: Dict[str, Any]) -> DomainFeatures:
    """Union text- and file-derived features. File fields win only for their own keys."""
    own_keys = {f.name for f in dataclasses.fields(DomainFeatures)}
    updates = {k: v for k, v in (file_features or {}).items() if k in own_keys}
    unknown = set(file_features or {}) - own_keys
    if unknown:
        logger.debug(f"Ignoring unknown feature keys: {sorted(unknown)}")
    return dataclasses.replace(text_features, **updates)
