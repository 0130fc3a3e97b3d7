"""
Pydantic models describing the structured soundfont payload format.

Payloads are JSON documents holding a list of zones. Each zone maps a key range
to one encoded sample. The models only check the structure; sample data stays
encoded and is handed to the audio engine untouched.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Zone(BaseModel):
    """One sample zone of a preset."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key_range_low: int = Field(0, alias="keyRangeLow")
    key_range_high: int = Field(127, alias="keyRangeHigh")
    original_pitch: float = Field(6000, alias="originalPitch")
    sample_rate: int = Field(44100, alias="sampleRate")
    coarse_tune: float = Field(0, alias="coarseTune")
    fine_tune: float = Field(0, alias="fineTune")
    loop_start: int = Field(0, alias="loopStart")
    loop_end: int = Field(0, alias="loopEnd")
    file: str | None = None
    sample: str | None = None

    @field_validator("key_range_low", "key_range_high")
    @classmethod
    def validate_midi_key(cls, v: int) -> int:
        if not 0 <= v <= 127:
            raise ValueError(f"Key range bound {v} is outside the MIDI range 0-127.")
        return v

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Sample rate must be positive.")
        return v

    @model_validator(mode="after")
    def validate_zone(self) -> "Zone":
        if self.key_range_low > self.key_range_high:
            raise ValueError(
                f"Key range is inverted ({self.key_range_low} > {self.key_range_high})."
            )
        if not self.file and not self.sample:
            raise ValueError("Zone carries neither 'file' nor 'sample' data.")
        return self

    def covers(self, midi_key: int) -> bool:
        return self.key_range_low <= midi_key <= self.key_range_high


class SoundfontPreset(BaseModel):
    """A decoded instrument preset."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    zones: list[Zone] = Field(..., min_length=1)

    def zone_for(self, midi_key: int) -> Zone | None:
        """Returns the first zone covering a MIDI key, if any."""
        return next((zone for zone in self.zones if zone.covers(midi_key)), None)
