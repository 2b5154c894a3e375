"""
Decoder Asset Resolution
========================

Single source for the decoder's two asset locators (core runtime and
execution module).

The placeholder strings below are substituted when the package is built:
    - Standard build: left empty, locators resolve to hosted URLs that the
      decoder fetches lazily at runtime
    - Self-contained build: replaced with base64 `data:` URIs, so no network
      fetch is needed to decode

No other module special-cases the build mode.
"""

import base64
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from vitals_stream.errors import ResourceUnavailable


logger = logging.getLogger(__name__)


DECODER_CORE_URL: str = "__DECODER_CORE_URL__"
DECODER_WASM_URL: str = "__DECODER_WASM_URL__"

DEFAULT_CORE_URL = "https://unpkg.com/@ffmpeg/core@0.12.6/dist/esm/ffmpeg-core.js"
DEFAULT_WASM_URL = "https://unpkg.com/@ffmpeg/core@0.12.6/dist/esm/ffmpeg-core.wasm"


class BuildMode(str, Enum):
    """How decoder assets are delivered."""

    STANDARD = "standard"
    SELF_CONTAINED = "self_contained"


@dataclass(frozen=True, slots=True)
class DecoderAssets:
    """Resolved locators for the external decoder."""

    core_url: str
    wasm_url: str
    mode: BuildMode

    @property
    def embedded(self) -> bool:
        return self.mode == BuildMode.SELF_CONTAINED

    def describe(self) -> dict:
        """Locators safe for logging (data URIs are truncated)."""
        def _short(url: str) -> str:
            return url if not url.startswith("data:") else f"{url[:32]}... ({len(url)} chars)"

        return {
            "mode": self.mode.value,
            "core_url": _short(self.core_url),
            "wasm_url": _short(self.wasm_url),
        }


def _substituted(value: Optional[str]) -> str:
    """Treat unsubstituted placeholders as empty."""
    if not value or (value.startswith("__") and value.endswith("__")):
        return ""
    return value


def resolve_decoder_assets(
    mode: BuildMode = BuildMode.STANDARD,
    core_url: Optional[str] = None,
    wasm_url: Optional[str] = None,
) -> DecoderAssets:
    """
    Resolve decoder asset locators for a build mode.

    Args:
        mode: STANDARD (hosted, fetched lazily) or SELF_CONTAINED (embedded)
        core_url: Override for the core runtime locator
        wasm_url: Override for the execution module locator

    Returns:
        DecoderAssets

    Raises:
        ResourceUnavailable: Self-contained mode without embedded data URIs
    """
    mode = BuildMode(mode)
    core = _substituted(core_url) or _substituted(DECODER_CORE_URL)
    wasm = _substituted(wasm_url) or _substituted(DECODER_WASM_URL)

    if mode == BuildMode.SELF_CONTAINED:
        if not (core.startswith("data:") and wasm.startswith("data:")):
            raise ResourceUnavailable(
                "Self-contained build requires embedded decoder assets (data URIs)"
            )
        return DecoderAssets(core_url=core, wasm_url=wasm, mode=mode)

    return DecoderAssets(
        core_url=core or DEFAULT_CORE_URL,
        wasm_url=wasm or DEFAULT_WASM_URL,
        mode=mode,
    )


def embed_asset(path: str, mime_type: str) -> str:
    """
    Build a data URI from a file, for self-contained packaging.

    Args:
        path: Asset file path
        mime_type: e.g. "text/javascript" or "application/wasm"

    Returns:
        `data:<mime>;base64,<payload>` string
    """
    payload = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{payload}"
