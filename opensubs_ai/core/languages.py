"""Cross-provider language consolidation and the compatibility matrix.

WHY: Every provider (model) spells languages its own way: one offers
"en", another "en-US", a third "en_GB". The UI must show one "English"
choice, know which providers can handle it, and submit each provider's
own code. This module is the only place where base-subtag matching
happens; UI lookups go through the LanguageCatalog it builds.

HOW: consolidate() walks the per-provider entry lists in order, groups
entries by their lower-cased base subtag, picks each provider's variant
code for the group, and derives the compatibility matrix from the
variants. A synthetic "auto-detect" language compatible with every
provider is always present.

RULES:
- Base subtag = lower-cased code split on "-"/"_", first segment
- Variant per provider: exact base-code match if offered, else first seen
- Variant codes keep the provider's original spelling
- Display name: first-seen entry whose code is the bare base, else the
  first-seen entry (first-seen = provider order, then entry order)
- Input entries whose base is "auto" are represented by the synthetic
  auto-detect language and are not grouped again
- LanguageCatalog and its matrix are immutable; rebuild to change them
- Pure: no I/O
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from opensubs_ai.api.models import LanguageEntry

logger = logging.getLogger(__name__)

AUTO_DETECT_ID = "auto-detect"
"""Canonical id of the synthetic auto-detect language."""

AUTO_DETECT_CODE = "auto"
"""Code submitted to providers when the language should be detected."""

_SUBTAG_SEPARATORS = re.compile(r"[-_]")


def base_subtag(code: str) -> str:
    """Return the lower-cased base subtag of a language code.

    >>> base_subtag("en-US")
    'en'
    >>> base_subtag("PT_br")
    'pt'
    """
    return _SUBTAG_SEPARATORS.split(code.strip().lower(), maxsplit=1)[0]


@dataclass(frozen=True)
class ConsolidatedLanguage:
    """One canonical (base-subtag level) language across all providers.

    RULES:
    - canonical_id is the base subtag ("en"), or "auto-detect"
    - variants_by_provider maps provider id → code to submit to that provider
    """

    canonical_id: str
    display_name: str
    variants_by_provider: Mapping[str, str]

    @property
    def providers(self) -> Tuple[str, ...]:
        return tuple(self.variants_by_provider)

    def variant_for(self, provider_id: str) -> Optional[str]:
        return self.variants_by_provider.get(provider_id)


@dataclass(frozen=True)
class LanguageCatalog:
    """Consolidated languages plus the provider compatibility matrix.

    WHY: The UI needs the language list, the matrix, and a handful of
    lookups (by id, by provider code, best variant). Bundling them in one
    immutable value lets the facade swap catalogs atomically when the
    service data changes.

    RULES:
    - languages: auto-detect first, then sorted by display name
    - compatibility: canonical id → frozenset of provider ids
    - Never mutated; consolidate() builds a new one
    """

    languages: Tuple[ConsolidatedLanguage, ...]
    compatibility: Mapping[str, FrozenSet[str]]
    providers: Tuple[str, ...] = field(default_factory=tuple)

    def get(self, canonical_id: str) -> Optional[ConsolidatedLanguage]:
        for language in self.languages:
            if language.canonical_id == canonical_id:
                return language
        return None

    def by_code(self, code: str) -> Optional[ConsolidatedLanguage]:
        """Find the canonical language a provider-specific code belongs to."""
        if not code:
            return None
        if code.strip().lower() in (AUTO_DETECT_CODE, AUTO_DETECT_ID):
            return self.get(AUTO_DETECT_ID)
        return self.get(base_subtag(code))

    def providers_for(self, canonical_id: str) -> FrozenSet[str]:
        return self.compatibility.get(canonical_id, frozenset())

    def is_compatible(self, canonical_id: str, provider_id: str) -> bool:
        if canonical_id == AUTO_DETECT_ID:
            return True
        return provider_id in self.providers_for(canonical_id)

    def variant_for(self, canonical_id: str, provider_id: str) -> Optional[str]:
        """Code to submit to `provider_id` for `canonical_id`, or None if unsupported."""
        language = self.get(canonical_id)
        if language is None:
            return None
        return language.variant_for(provider_id)


@dataclass
class _Group:
    display_name: str
    display_from_base: bool
    variants: Dict[str, str] = field(default_factory=dict)
    exact: Dict[str, bool] = field(default_factory=dict)


def consolidate(catalogs: Mapping[str, Sequence[LanguageEntry]]) -> LanguageCatalog:
    """Merge per-provider language lists into canonical languages.

    WHY: Two providers offering "en-GB" and "en-US" must both appear as
    compatible with "English", each submitting its own dialect code,
    even though no literal code matches.

    HOW: Single ordered pass over providers and their entries. Each entry
    lands in the group of its base subtag. A provider's variant for the
    group is replaced only when an exact base-code entry appears after a
    dialect. The matrix is derived from the final variants.

    RULES:
    - Providers with an empty list still appear in LanguageCatalog.providers
    - auto-detect is compatible with every provider

    Args:
        catalogs: Ordered mapping of provider id → that provider's entries.

    Returns:
        A new immutable LanguageCatalog.
    """
    groups: Dict[str, _Group] = {}

    for provider_id, entries in catalogs.items():
        for entry in entries:
            normalized = entry.code.strip().lower()
            base = base_subtag(normalized)
            if not base:
                logger.warning("Ignoring language entry with empty code from %s", provider_id)
                continue
            if base == AUTO_DETECT_CODE:
                continue

            is_exact = normalized == base
            group = groups.get(base)
            if group is None:
                group = _Group(display_name=entry.display_name, display_from_base=is_exact)
                groups[base] = group
            elif is_exact and not group.display_from_base:
                group.display_name = entry.display_name
                group.display_from_base = True

            if provider_id not in group.variants:
                group.variants[provider_id] = entry.code
                group.exact[provider_id] = is_exact
            elif is_exact and not group.exact[provider_id]:
                group.variants[provider_id] = entry.code
                group.exact[provider_id] = True

    providers = tuple(catalogs)
    languages: List[ConsolidatedLanguage] = [
        ConsolidatedLanguage(
            canonical_id=AUTO_DETECT_ID,
            display_name="Auto-detect",
            variants_by_provider=MappingProxyType(
                {provider_id: AUTO_DETECT_CODE for provider_id in providers}
            ),
        )
    ]
    for canonical_id, group in groups.items():
        languages.append(
            ConsolidatedLanguage(
                canonical_id=canonical_id,
                display_name=group.display_name,
                variants_by_provider=MappingProxyType(dict(group.variants)),
            )
        )

    auto, rest = languages[0], languages[1:]
    rest.sort(key=lambda lang: (lang.display_name.casefold(), lang.canonical_id))
    ordered = (auto,) + tuple(rest)

    compatibility = MappingProxyType(
        {lang.canonical_id: frozenset(lang.variants_by_provider) for lang in ordered}
    )

    logger.debug(
        "Consolidated %d providers into %d languages", len(providers), len(ordered) - 1
    )
    return LanguageCatalog(languages=ordered, compatibility=compatibility, providers=providers)


def as_entries(catalog: LanguageCatalog, provider_id: str = "canonical") -> List[LanguageEntry]:
    """Express a consolidated catalog as a single-provider entry list.

    Used to re-consolidate canonical data (e.g. a cached catalog) and to
    hand the UI a flat list of canonical codes.
    """
    return [
        LanguageEntry(provider_id=provider_id, code=lang.canonical_id, display_name=lang.display_name)
        for lang in catalog.languages
        if lang.canonical_id != AUTO_DETECT_ID
    ]
