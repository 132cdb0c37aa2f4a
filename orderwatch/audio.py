"""
Order alert sound.

Synthesizes a soft chime phrase (sine tones, attack/sustain/release
envelope, low-pass filtered) with numpy and replays it every few seconds
until stopped. Playback goes through an "audio context" created lazily by
an injected factory; when the factory fails or returns None the generator
is unsupported and every call is a silent no-op.

One generator instance is created by the application and handed to
whoever needs it.
"""
from __future__ import annotations
import asyncio
import io
import math
import wave
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

SAMPLE_RATE = 22050
LOWPASS_HZ = 2000.0
REPEAT_SECONDS = 6.0


@dataclass(frozen=True)
class Tone:
    frequency: float  # Hz, 0 = rest
    duration: float  # seconds
    volume: float  # 0..1


# A4 C5 E5 up, E5 C5 A4 down
ORDER_PHRASE = (
    Tone(440.00, 0.4, 0.30),
    Tone(0, 0.1, 0),
    Tone(523.25, 0.4, 0.35),
    Tone(0, 0.1, 0),
    Tone(659.25, 0.6, 0.40),
    Tone(0, 0.4, 0),
    Tone(659.25, 0.3, 0.30),
    Tone(0, 0.1, 0),
    Tone(523.25, 0.3, 0.25),
    Tone(0, 0.1, 0),
    Tone(440.00, 0.8, 0.20),
)


class AudioContext(Protocol):
    state: str  # "suspended" | "running"

    async def resume(self) -> None: ...

    def play(self, samples: np.ndarray, sample_rate: int) -> None: ...


ContextFactory = Callable[[], Optional[AudioContext]]


# ----------------------------
# Synthesis
# ----------------------------
def phrase_duration(phrase: Sequence[Tone] = ORDER_PHRASE) -> float:
    return sum(t.duration for t in phrase)


def envelope(duration: float, volume: float,
             sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    n = max(1, int(round(duration * sample_rate)))
    t = np.arange(n) / sample_rate
    fade = min(0.1, duration * 0.2)
    points = [
        (0.0, 0.0),
        (fade, volume * 0.5),
        (duration * 0.4, volume),
        (duration - fade, volume * 0.3),
        (duration, 0.001),
    ]
    env = np.zeros(n)
    for (t0, v0), (t1, v1) in zip(points, points[1:]):
        mask = (t >= t0) & (t < t1)
        if t1 <= t0 or not mask.any():
            continue
        frac = (t[mask] - t0) / (t1 - t0)
        if v0 > 0 and v1 > 0:
            # exponential ramp
            env[mask] = v0 * (v1 / v0) ** frac
        else:
            env[mask] = v0 + (v1 - v0) * frac
    return env


def lowpass(samples: np.ndarray, cutoff: float = LOWPASS_HZ,
            sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """One-pole RC filter, y[n] = y[n-1] + alpha * (x[n] - y[n-1]).

    Solved in closed form per block:
    y[k] = r**(k+1) * y_prev + alpha * r**k * cumsum(x / r**k), r = 1 - alpha.
    Blocks stay short enough that r**-k never overflows.
    """
    dt = 1.0 / sample_rate
    rc = 1.0 / (2 * math.pi * cutoff)
    alpha = dt / (rc + dt)
    r = 1.0 - alpha
    x = np.asarray(samples, dtype=np.float64)
    if r <= 0.0 or x.size == 0:
        return x.astype(samples.dtype, copy=True)
    block = int(max(1, min(4096, 300.0 / -math.log(r))))
    k = np.arange(block)
    decay = r ** k
    out = np.empty_like(x)
    y_prev = 0.0
    for start in range(0, x.size, block):
        chunk = x[start:start + block]
        m = chunk.size
        y = alpha * decay[:m] * np.cumsum(chunk / decay[:m])
        y += y_prev * r * decay[:m]
        out[start:start + m] = y
        y_prev = y[-1]
    return out.astype(samples.dtype, copy=False)


def render_tone(tone: Tone, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    n = max(1, int(round(tone.duration * sample_rate)))
    if tone.frequency <= 0 or tone.volume <= 0:
        return np.zeros(n, dtype=np.float32)
    t = np.arange(n) / sample_rate
    wave_ = np.sin(2 * math.pi * tone.frequency * t)
    shaped = wave_ * envelope(tone.duration, tone.volume, sample_rate)
    return lowpass(shaped, LOWPASS_HZ, sample_rate).astype(np.float32)


def render_phrase(phrase: Sequence[Tone] = ORDER_PHRASE,
                  sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    return np.concatenate([render_tone(t, sample_rate) for t in phrase])


def to_wav_bytes(samples: np.ndarray,
                 sample_rate: int = SAMPLE_RATE) -> bytes:
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(sample_rate)
        w.writeframes(pcm.tobytes())
    return buf.getvalue()


# ----------------------------
# Output device
# ----------------------------
class SoundDeviceContext:
    def __init__(self, sd: Any) -> None:
        self.sd = sd
        self.state = "suspended"

    async def resume(self) -> None:
        # raises when there is no usable output device
        self.sd.query_devices(kind="output")
        self.state = "running"

    def play(self, samples: np.ndarray, sample_rate: int) -> None:
        # non-blocking; a playing phrase is replaced, not mixed
        self.sd.play(samples, sample_rate)


def sounddevice_context() -> Optional[AudioContext]:
    # PortAudio may be missing on headless hosts (OSError on import)
    import sounddevice as sd
    return SoundDeviceContext(sd)


def no_audio() -> Optional[AudioContext]:
    return None


# ----------------------------
# Generator
# ----------------------------
class AudioAlertGenerator:
    def __init__(
        self,
        context_factory: ContextFactory = sounddevice_context,
        repeat_interval: float = REPEAT_SECONDS,
        phrase: Sequence[Tone] = ORDER_PHRASE,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self._factory = context_factory
        self._context: Optional[AudioContext] = None
        self._context_created = False
        self._samples: Optional[np.ndarray] = None
        self._repeat_task: Optional[asyncio.Task] = None
        self.repeat_interval = repeat_interval
        self.phrase = tuple(phrase)
        self.sample_rate = sample_rate
        self.is_playing = False

    def _get_context(self) -> Optional[AudioContext]:
        if not self._context_created:
            self._context_created = True
            try:
                self._context = self._factory()
            except Exception as e:
                logger.warning("audio_unsupported", error=str(e))
                self._context = None
        return self._context

    def is_audio_supported(self) -> bool:
        return self._get_context() is not None

    def phrase_samples(self) -> np.ndarray:
        if self._samples is None:
            self._samples = render_phrase(self.phrase, self.sample_rate)
        return self._samples

    def render_phrase_wav(self) -> bytes:
        return to_wav_bytes(self.phrase_samples(), self.sample_rate)

    async def request_audio_permission(self) -> bool:
        ctx = self._get_context()
        if ctx is None:
            return False
        try:
            if ctx.state == "suspended":
                await ctx.resume()
        except Exception as e:
            logger.error("audio_permission_denied", error=str(e))
            return False
        return True

    async def play_order_alert(self) -> None:
        ctx = self._get_context()
        if ctx is None:
            return
        # restart, never stack
        self._cancel_repeat()
        try:
            if ctx.state == "suspended":
                await ctx.resume()
            self.is_playing = True
            ctx.play(self.phrase_samples(), self.sample_rate)
        except Exception as e:
            logger.error("alert_playback_failed", error=str(e))
            self.is_playing = False
            return
        self._repeat_task = asyncio.create_task(self._repeat(ctx))

    async def _repeat(self, ctx: AudioContext) -> None:
        while self.is_playing:
            await asyncio.sleep(self.repeat_interval)
            if not self.is_playing:
                break
            try:
                ctx.play(self.phrase_samples(), self.sample_rate)
            except Exception as e:
                logger.error("alert_replay_failed", error=str(e))

    def stop_alert(self) -> None:
        # whatever the device is already playing finishes on its own
        self.is_playing = False
        self._cancel_repeat()

    def _cancel_repeat(self) -> None:
        task, self._repeat_task = self._repeat_task, None
        if task is not None and not task.done():
            task.cancel()
