from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RoomState(WireModel):
    video_url: str = ""
    subtitles_url: Optional[str] = None
    is_playing: bool = False
    current_time: float = Field(0.0, ge=0)  # Host position when client_timestamp was taken
    playback_rate: float = Field(1.0, gt=0)
    last_update: Optional[int] = None  # Store-assigned epoch millis, strictly increasing per room
    client_timestamp: Optional[int] = None  # Host wall clock millis at snapshot creation


class RoomPatch(WireModel):
    """Merge patch for a room. Unset fields are left alone by the store."""

    video_url: Optional[str] = None
    subtitles_url: Optional[str] = None
    is_playing: Optional[bool] = None
    current_time: Optional[float] = Field(None, ge=0)
    playback_rate: Optional[float] = Field(None, gt=0)
    client_timestamp: Optional[int] = None

    @property
    def touches_transport(self) -> bool:
        return bool({"is_playing", "current_time"} & self.model_fields_set)

    @model_validator(mode="after")
    def _fresh_timestamp(self):
        if self.touches_transport and self.client_timestamp is None:
            raise ValueError("writes changing isPlaying or currentTime must carry clientTimestamp")
        return self

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)
