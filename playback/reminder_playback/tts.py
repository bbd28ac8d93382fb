"""
Speech synthesis and the fingerprinted speech cache
"""

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
import edge_tts
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import SpeechSettings
from .errors import SynthesisFailed

logger = logging.getLogger(__name__)

CACHE_PREFIX = "tts_"
CACHE_SUFFIX = ".mp3"


class SpeechSynthesizer:
    """Turns text into encoded audio bytes"""

    async def synthesize(self, text: str, voice: str, rate: str, pitch: str) -> bytes:
        raise NotImplementedError


class EdgeSpeechSynthesizer(SpeechSynthesizer):
    """Microsoft Edge online voices via edge-tts (MP3 output)"""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def synthesize(self, text: str, voice: str, rate: str, pitch: str) -> bytes:
        communicate = edge_tts.Communicate(text, voice, rate=rate, pitch=pitch)
        chunks = []
        async for chunk in communicate.stream():
            if chunk.get("type") == "audio":
                chunks.append(chunk["data"])
        return b"".join(chunks)


def _preview(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class SpeechCache:
    """
    Content-addressed cache of synthesized speech on local disk.

    The file name is derived from (text, voice, rate, pitch), so a repeated
    request is a lookup and never resynthesizes. Entries are only removed by
    clear_cache().
    """

    def __init__(self, cache_dir: str, synthesizer: SpeechSynthesizer,
                 defaults: Optional[SpeechSettings] = None):
        self.cache_dir = Path(cache_dir)
        self.synthesizer = synthesizer
        self.defaults = defaults or SpeechSettings()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._ensure_cache_dir()

    def _ensure_cache_dir(self) -> None:
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Created TTS cache directory: {self.cache_dir}")

    @staticmethod
    def fingerprint(text: str, voice: str, rate: str, pitch: str) -> str:
        return hashlib.md5(f"{text}|{voice}|{rate}|{pitch}".encode("utf-8")).hexdigest()

    def cache_path(self, text: str, voice: Optional[str] = None, rate: Optional[str] = None,
                   pitch: Optional[str] = None) -> Path:
        key = self.fingerprint(
            text,
            voice or self.defaults.voice,
            rate or self.defaults.rate,
            pitch or self.defaults.pitch,
        )
        return self.cache_dir / f"{CACHE_PREFIX}{key}{CACHE_SUFFIX}"

    def get_cached(self, text: str, voice: Optional[str] = None, rate: Optional[str] = None,
                   pitch: Optional[str] = None) -> Optional[str]:
        """Return the cached file path if it exists"""
        path = self.cache_path(text, voice, rate, pitch)
        return str(path) if path.exists() else None

    async def generate(self, text: str, voice: Optional[str] = None, rate: Optional[str] = None,
                       pitch: Optional[str] = None, use_cache: bool = True) -> str:
        """
        Return a path to speech audio for text, synthesizing on a cache miss.

        Concurrent calls for the same fingerprint share a single synthesis.

        Raises:
            SynthesisFailed: the synthesizer failed or returned no audio
        """
        voice = voice or self.defaults.voice
        rate = rate or self.defaults.rate
        pitch = pitch or self.defaults.pitch
        path = self.cache_path(text, voice, rate, pitch)

        if use_cache and path.exists():
            logger.debug(f"Using cached TTS audio for '{_preview(text)}'")
            return str(path)

        key = path.name
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._synthesize_to(path, text, voice, rate, pitch))
            self._inflight[key] = pending

            def _forget(fut: asyncio.Future, key: str = key) -> None:
                if self._inflight.get(key) is fut:
                    del self._inflight[key]

            pending.add_done_callback(_forget)
        else:
            logger.debug(f"Joining in-flight synthesis for '{_preview(text)}'")

        return await asyncio.shield(pending)

    async def _synthesize_to(self, path: Path, text: str, voice: str, rate: str, pitch: str) -> str:
        logger.info(f"Generating TTS audio for '{_preview(text)}' (voice: {voice})")
        try:
            audio = await self.synthesizer.synthesize(text, voice, rate, pitch)
        except SynthesisFailed:
            raise
        except Exception as e:
            logger.error(f"TTS generation failed: {e}")
            raise SynthesisFailed(f"Speech synthesis failed for '{_preview(text)}': {e}") from e

        if not audio:
            raise SynthesisFailed(f"Speech synthesis returned no audio for '{_preview(text)}'")

        self._ensure_cache_dir()
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_bytes(audio)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise SynthesisFailed(f"Could not write speech cache file {path}: {e}") from e

        logger.debug(f"TTS generation complete: {path}")
        return str(path)

    async def pregenerate(self, texts: List[str]) -> List[str]:
        """Generate texts one after another, skipping failures"""
        results = []
        for text in texts:
            try:
                results.append(await self.generate(text))
            except SynthesisFailed as e:
                logger.error(f"Failed to pregenerate TTS for '{_preview(text)}': {e}")
        return results

    def clear_cache(self) -> int:
        """Delete cached speech files, returning how many were removed"""
        removed = 0
        if not self.cache_dir.exists():
            return removed
        for entry in self.cache_dir.iterdir():
            if entry.is_file() and entry.name.startswith(CACHE_PREFIX) and entry.name.endswith(CACHE_SUFFIX):
                entry.unlink()
                removed += 1
        logger.info(f"TTS cache cleared ({removed} files)")
        return removed
