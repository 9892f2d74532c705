"""Per-vendor protocol strategies, selected by provider id."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .json_extractor import ParseResult
from .stream_parser import (
    NormalizeFn,
    PiDeltaCoalescer,
    normalize_claude_line,
    normalize_cursor_agent_line,
    normalize_pi_line,
)
from .transcripts import (
    extract_claude_transcript,
    extract_cursor_agent_transcript,
    extract_pi_transcript,
)


@dataclass(frozen=True)
class ProtocolAdapter:
    """Normalizer and transcript extractor for one vendor's JSONL protocol.

    ``live_normalizer`` builds the normalizer used for a single live run; it
    defaults to the stateless ``normalize``.
    """

    provider_id: str
    normalize: NormalizeFn
    extract: Callable[[str], ParseResult]
    live_normalizer: Callable[[], NormalizeFn] | None = None

    def new_live_normalizer(self) -> NormalizeFn:
        if self.live_normalizer is None:
            return self.normalize
        return self.live_normalizer()


PROTOCOLS: dict[str, ProtocolAdapter] = {
    "claude": ProtocolAdapter(
        provider_id="claude",
        normalize=normalize_claude_line,
        extract=extract_claude_transcript,
    ),
    "cursor-agent": ProtocolAdapter(
        provider_id="cursor-agent",
        normalize=normalize_cursor_agent_line,
        extract=extract_cursor_agent_transcript,
    ),
    "pi": ProtocolAdapter(
        provider_id="pi",
        normalize=normalize_pi_line,
        extract=extract_pi_transcript,
        live_normalizer=PiDeltaCoalescer,
    ),
}


def get_protocol(provider_id: str) -> ProtocolAdapter:
    """Look up the protocol adapter for a provider id.

    Raises:
        ValueError: If the provider id is unknown
    """
    try:
        return PROTOCOLS[provider_id]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider_id}") from None
