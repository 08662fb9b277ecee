"""Preprocessor definitions passed to the kernel compiler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from gpu_runtime.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class PreprocessorDefinitions:
    """Finalized definitions: valueless terms (``-DFOO``) and valued ones (``-DFOO=1``)."""

    valueless: set[str] = field(default_factory=set)
    valued: dict[str, str] = field(default_factory=dict)

    @property
    def defined_terms(self) -> set[str]:
        return set(self.valueless) | set(self.valued)

    def missing(self, required_terms: Iterable[str]) -> list[str]:
        """Required terms defined by neither mechanism, in the order given."""
        defined = self.defined_terms
        return [term for term in required_terms if term not in defined]

    def compiler_flags(self) -> list[str]:
        flags = [f"-D{term}" for term in sorted(self.valueless)]
        flags += [f"-D{term}={value}" for term, value in sorted(self.valued.items())]
        return flags


def parse_definition(definition: str) -> tuple[str, str | None]:
    """Split ``NAME`` or ``NAME=VALUE``; ``NAME=`` is a valid empty definition."""
    term, sep, value = definition.partition("=")
    if not term:
        raise ConfigurationError(f'Invalid preprocessor definition "{definition}": empty defined term')
    return term, (value if sep else None)


def finalize_preprocessor_definitions(
    generic: Iterable[str],
    dedicated: Mapping[str, str] | None = None,
) -> PreprocessorDefinitions:
    """Merge generic ``-D`` strings with dedicated per-term options.

    Dedicated values come first; a generic ``NAME=VALUE`` for the same term
    does not replace them.
    """
    result = PreprocessorDefinitions(valued=dict(dedicated or {}))
    for definition in generic:
        term, value = parse_definition(definition)
        if value is None:
            result.valueless.add(term)
        else:
            result.valued.setdefault(term, value)
    for term, value in sorted(result.valued.items()):
        logger.debug("Finalized valued preprocessor definition: %s=%s", term, value)
    for term in sorted(result.valueless):
        logger.debug("Finalized valueless preprocessor definition: %s", term)
    return result
