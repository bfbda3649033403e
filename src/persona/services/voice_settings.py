"""
Voice configuration passed through to the speech provider

Presets mirror the ElevenLabs settings the avatar voices were tuned with:
lower stability keeps speech natural, similarity_boost preserves the trained
voice character.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


_KNOWN_FIELDS = ("stability", "similarity_boost", "style", "use_speaker_boost")


@dataclass(frozen=True)
class VoiceSettings:
    """
    Provider voice settings

    Keys this class does not model (speed, future provider options) are kept
    in `extra` and sent back out by to_dict() unchanged.
    """
    stability: float = 0.50
    similarity_boost: float = 0.75
    style: float = 0.0
    use_speaker_boost: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        for name in ("stability", "similarity_boost", "style"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")

    def to_dict(self) -> Dict[str, Any]:
        return {**self.extra, **{name: getattr(self, name) for name in _KNOWN_FIELDS}}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VoiceSettings":
        if not data:
            return cls()
        known = {k: data[k] for k in _KNOWN_FIELDS if k in data}
        extra = {k: v for k, v in data.items() if k not in _KNOWN_FIELDS}
        return cls(**known, extra=extra)


def natural_voice_settings() -> VoiceSettings:
    """Closest to the original trained voice"""
    return VoiceSettings(stability=0.50, similarity_boost=0.75, style=0.0, use_speaker_boost=False)


def expressive_voice_settings() -> VoiceSettings:
    """More variation while keeping the voice identity"""
    return VoiceSettings(stability=0.45, similarity_boost=0.70, style=0.15, use_speaker_boost=False)


VOICE_PRESETS = {
    "natural": natural_voice_settings,
    "conversational": natural_voice_settings,
    "expressive": expressive_voice_settings,
}


@dataclass(frozen=True)
class VoiceConfig:
    """Caller-supplied voice: which voice and how it should sound"""
    voice_id: str
    settings: VoiceSettings = field(default_factory=natural_voice_settings)

    def __post_init__(self):
        if not self.voice_id:
            raise ValueError("voice_id is required")

    @classmethod
    def from_preset(cls, voice_id: str, preset: str = "natural") -> "VoiceConfig":
        try:
            factory = VOICE_PRESETS[preset]
        except KeyError:
            raise ValueError(
                f"Unknown voice preset: '{preset}'. Supported presets: {', '.join(VOICE_PRESETS)}"
            ) from None
        return cls(voice_id=voice_id, settings=factory())
