import logging
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping

from storefront.core.config import AllowedTypeConfig, settings

logger = logging.getLogger(__name__)

# Non-canonical MIME types some clients still send
MIME_ALIASES: Mapping[str, str] = MappingProxyType({
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
})


@dataclass(frozen=True)
class AllowedTypeRule:
    mime_type: str
    extensions: frozenset[str]
    signatures: tuple[bytes, ...]

    def matches(self, head: bytes) -> bool:
        return any(head.startswith(sig) for sig in self.signatures)


class AllowedTypeRules:
    """Read-only table of accepted upload types.

    Built once at process start and shared by every request. Lookups are
    case-insensitive and resolve MIME aliases to their canonical form.
    """

    __slots__ = ("_rules", "_aliases", "_longest_signature")

    def __init__(
        self,
        rules: list[AllowedTypeRule],
        aliases: Mapping[str, str] = MIME_ALIASES,
    ) -> None:
        self._rules: Mapping[str, AllowedTypeRule] = MappingProxyType(
            {rule.mime_type: rule for rule in rules}
        )
        self._aliases: Mapping[str, str] = MappingProxyType(dict(aliases))
        self._longest_signature = max(
            (len(sig) for rule in rules for sig in rule.signatures),
            default=0,
        )

    @classmethod
    def from_config(
        cls,
        allowed_types: dict[str, AllowedTypeConfig],
        aliases: Mapping[str, str] = MIME_ALIASES,
    ) -> "AllowedTypeRules":
        """Build the table, keying every rule by its canonical MIME type.

        An alias key such as "image/jpg" lands on "image/jpeg"; when both are
        configured their extensions and signatures are merged.
        """
        extensions: dict[str, set[str]] = {}
        signatures: dict[str, list[bytes]] = {}
        for mime, cfg in allowed_types.items():
            key = mime.strip().lower()
            canonical = aliases.get(key, key)
            if canonical != key:
                logger.info("Allowed type %s configured under alias of %s", key, canonical)
            if canonical in extensions:
                logger.warning("Allowed type %s configured more than once; merging", canonical)
            extensions.setdefault(canonical, set()).update(cfg.extensions)
            sigs = signatures.setdefault(canonical, [])
            for sig in (bytes.fromhex(s) for s in cfg.signatures):
                if sig not in sigs:
                    sigs.append(sig)

        rules = [
            AllowedTypeRule(
                mime_type=mime,
                extensions=frozenset(extensions[mime]),
                signatures=tuple(signatures[mime]),
            )
            for mime in extensions
        ]
        for rule in rules:
            if not rule.signatures:
                logger.warning(
                    "Allowed type %s has no signature; uploads of it will be rejected",
                    rule.mime_type,
                )
        return cls(rules)

    # ------------------------------------------------------------------
    def canonical_mime(self, content_type: str | None) -> str:
        """Strip parameters, lower-case and resolve aliases.

        "image/JPG; charset=binary" -> "image/jpeg"
        """
        if not content_type:
            return ""
        base = content_type.split(";")[0].strip().lower()
        return self._aliases.get(base, base)

    def get(self, mime_type: str) -> AllowedTypeRule | None:
        return self._rules.get(self.canonical_mime(mime_type))

    def __contains__(self, mime_type: object) -> bool:
        return isinstance(mime_type, str) and self.get(mime_type) is not None

    def __iter__(self):
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def mime_types(self) -> list[str]:
        return sorted(self._rules)

    @property
    def sniff_window(self) -> int:
        """Number of leading bytes needed to test every signature."""
        return self._longest_signature

    def match_signature(self, head: bytes) -> AllowedTypeRule | None:
        # Longest signature first so a more specific prefix wins
        candidates = sorted(
            ((sig, rule) for rule in self._rules.values() for sig in rule.signatures),
            key=lambda pair: len(pair[0]),
            reverse=True,
        )
        for sig, rule in candidates:
            if head.startswith(sig):
                return rule
        return None


@lru_cache(maxsize=1)
def get_allowed_type_rules() -> AllowedTypeRules:
    """Process-wide rules table built from settings on first use."""
    rules = AllowedTypeRules.from_config(settings.allowed_types)
    logger.info("Loaded %d allowed upload type(s): %s", len(rules), ", ".join(rules.mime_types))
    return rules
