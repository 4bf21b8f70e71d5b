from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mediafan.const import REMOTE_SCHEMES


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(..., gt=0, description="Width of the encoded video in pixels.")
    height: int = Field(..., gt=0, description="Height of the encoded video in pixels.")
    output_file: Path = Field(..., description="Path of the output file written by this task.")
    encoder: str = Field(..., description="Video encoder name understood by the codec library (e.g. libx264).")
    format: str = Field(..., description="Container format name (e.g. mp4, matroska).")
    audio_encoder: Optional[str] = Field(
        "aac", description="Audio encoder name. None drops audio from this output."
    )
    video_bitrate: Optional[str] = Field(None, description="Video bitrate like '4M' or '2500k'.")
    preset: Optional[str] = Field(None, description="Encoder preset, passed through as an encoder option.")
    idle_timeout: Optional[float] = Field(
        None, gt=0, description="Seconds to wait for a frame before failing; defaults to the pipeline setting."
    )


class Hook(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Endpoint notified once every output has been written.")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = Field(
        "POST", description="HTTP method used to notify the endpoint."
    )

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        if urlparse(value).scheme.lower() not in REMOTE_SCHEMES:
            raise ValueError(f"Hook URL must be http or https: {value}")
        return value
