"""Audio effect presets and their ffmpeg filter chains."""

import math
import re
from dataclasses import dataclass
from typing import Any

from audioheaven.errors import ValidationError

OUTPUT_SAMPLE_RATE = 44100
OUTPUT_EXTENSION = "mp3"
OUTPUT_MIMETYPE = "audio/mpeg"

# libmp3lame VBR quality 2 (~190 kbit/s)
CODEC_ARGS = ["-acodec", "libmp3lame", "-q:a", "2"]

CUSTOM_PRESET = "custom"


@dataclass(frozen=True)
class EffectOptions:
    """Effect parameters for one processing job."""

    preset: str
    speed: float = 1.0  # playback speed multiplier
    pitch: float = 0.0  # semitones
    reverb: float = 0.0  # 0 - 100
    bass_boost: float = 0.0  # 0 - 100
    pan_speed: float | None = None  # Hz, 8D panning only

    def to_dict(self) -> dict[str, Any]:
        return {
            "preset": self.preset,
            "speed": self.speed,
            "pitch": self.pitch,
            "reverb": self.reverb,
            "bassBoost": self.bass_boost,
            "panSpeed": self.pan_speed,
        }


EFFECT_PRESETS: dict[str, EffectOptions] = {
    "nightcore": EffectOptions("nightcore", speed=1.25, pitch=4),
    "slowreverb": EffectOptions("slowreverb", speed=0.85, reverb=70),
    "vaporwave": EffectOptions("vaporwave", speed=0.8, pitch=-3, reverb=40),
    "daycore": EffectOptions("daycore", speed=0.9, pitch=-2),
    "bassboost": EffectOptions("bassboost", bass_boost=80),
    "8d": EffectOptions("8d", reverb=30, pan_speed=0.5),
    "chipmunk": EffectOptions("chipmunk", pitch=8),
    "deepvoice": EffectOptions("deepvoice", pitch=-6, bass_boost=20),
}


def _optional_number(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{key} must be a number")
    return number


def _number(data: dict[str, Any], key: str, default: float) -> float:
    value = _optional_number(data, key)
    return default if value is None else value


def options_from_request(data: dict[str, Any]) -> EffectOptions:
    """Build EffectOptions from a /process request body.

    Named presets ignore the numeric fields; ``custom`` reads them with
    neutral defaults.

    Raises:
        ValidationError: On an unknown preset or out-of-range values
    """
    preset = data.get("preset")
    if not isinstance(preset, str):
        raise ValidationError("Invalid preset")
    if preset in EFFECT_PRESETS:
        return EFFECT_PRESETS[preset]
    if preset != CUSTOM_PRESET:
        raise ValidationError("Invalid preset")

    speed = _number(data, "speed", 1.0)
    pitch = _number(data, "pitch", 0.0)
    reverb = _number(data, "reverb", 0.0)
    bass_boost = _number(data, "bassBoost", 0.0)
    pan_speed = _optional_number(data, "panSpeed")

    if not 0.1 <= speed <= 4.0:
        raise ValidationError("speed must be between 0.1 and 4.0")
    if not -24 <= pitch <= 24:
        raise ValidationError("pitch must be between -24 and 24 semitones")
    for name, value in (("reverb", reverb), ("bassBoost", bass_boost)):
        if not 0 <= value <= 100:
            raise ValidationError(f"{name} must be between 0 and 100")

    return EffectOptions(
        preset=CUSTOM_PRESET,
        speed=speed,
        pitch=pitch,
        reverb=reverb,
        bass_boost=bass_boost,
        pan_speed=pan_speed,
    )


def build_filter_chain(options: EffectOptions) -> list[str]:
    """Translate effect options into an ordered list of ffmpeg audio filters."""
    filters: list[str] = []

    if options.speed != 1:
        # atempo only accepts 0.5 - 2.0, so chain it for larger changes
        speed = options.speed
        while speed < 0.5:
            filters.append("atempo=0.5")
            speed /= 0.5
        while speed > 2.0:
            filters.append("atempo=2.0")
            speed /= 2.0
        if speed != 1:
            filters.append(f"atempo={speed:.4f}")

    if options.pitch != 0:
        pitch_factor = 2 ** (options.pitch / 12)
        filters.append(f"asetrate={OUTPUT_SAMPLE_RATE}*{pitch_factor:.6f}")
        filters.append(f"aresample={OUTPUT_SAMPLE_RATE}")

    if options.reverb > 0:
        intensity = options.reverb / 100
        decay = 0.3 + intensity * 0.4
        delay = 50 + intensity * 100
        filters.append(f"aecho=0.8:0.88:{delay:.0f}:{decay:.2f}")

    if options.bass_boost > 0:
        gain = options.bass_boost / 100 * 15
        filters.append(f"equalizer=f=80:width_type=o:width=2:g={gain:.1f}")

    if options.preset == "8d" and options.pan_speed:
        filters.append(f"apulsator=mode=sine:hz={options.pan_speed:g}:amount=1")

    return filters


def build_ffmpeg_args(options: EffectOptions) -> list[str]:
    """Filter and codec arguments placed between the input and output paths."""
    filters = build_filter_chain(options)
    filter_args = ["-af", ",".join(filters)] if filters else []
    return filter_args + CODEC_ARGS


def output_display_name(source_name: str, preset: str) -> str:
    """Display name for a processed file, e.g. ``song_nightcore.mp3``."""
    base_name = re.sub(r"\.[^.]+$", "", source_name) or "audio"
    return f"{base_name}_{preset}.{OUTPUT_EXTENSION}"
