"""Data structures shared across the service: Encore jobs, transcode info and callback bodies."""

from __future__ import annotations

import math
import posixpath
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

DEFAULT_TTL = 3600

_PATH_SAFE = "/%!$&'()*+,;=:@"


def _mapping(data: Any) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _clean_join(elements: list[str]) -> str:
    joined = "/".join(e for e in elements if e)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def join_url(base: str, *args: str) -> str:
    """Join path elements onto a URL, cleaning the path and keeping a trailing slash."""
    parts = urlsplit(base)
    elements = [parts.path, *(quote(arg, safe=_PATH_SAFE) for arg in args)]
    if not elements[0].startswith("/"):
        elements[0] = "/" + elements[0]
        path = _clean_join(elements)[1:]
    else:
        path = _clean_join(elements)
    if elements[-1].endswith("/") and not path.endswith("/"):
        path += "/"
    return urlunsplit(parts._replace(path=path))


@dataclass
class ManifestAsset:
    creative_id: str
    master_playlist_url: str


@dataclass
class AssetDescription:
    """An interstitial asset as used in HLS asset lists."""

    uri: str
    duration: float

    def to_dict(self) -> dict[str, Any]:
        return {"URI": self.uri, "DURATION": self.duration}


@dataclass
class TranscodeInfo:
    url: str = ""
    aspect_ratio: str = ""
    frame_rates: list[float] = field(default_factory=list)
    status: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "aspectRatio": self.aspect_ratio,
            "frameRates": list(self.frame_rates),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TranscodeInfo:
        data = _mapping(data)
        return cls(
            url=data.get("url") or "",
            aspect_ratio=data.get("aspectRatio") or "",
            frame_rates=[float(rate) for rate in data.get("frameRates") or []],
            status=data.get("status") or "",
        )


@dataclass
class EncoreJobProgress:
    job_id: str = ""
    external_id: str = ""
    progress: int = 0
    status: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> EncoreJobProgress:
        data = _mapping(data)
        return cls(
            job_id=data.get("jobId") or "",
            external_id=data.get("externalId") or "",
            progress=int(data.get("progress") or 0),
            status=data.get("status") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "externalId": self.external_id,
            "progress": self.progress,
            "status": self.status,
        }


@dataclass
class EncoreInput:
    uri: str = ""
    seek_to: float = 0.0
    copy_ts: bool = False
    media_type: str = ""


@dataclass
class EncoreVideoStream:
    codec: str = ""
    width: int = 0
    height: int = 0
    frame_rate: str = ""


@dataclass
class EncoreAudioStream:
    codec: str = ""
    channels: int = 0
    sampling_rate: int = 0
    profile: str = ""


@dataclass
class EncoreOutput:
    media_type: str = ""
    format: str = ""
    file: str = ""
    file_size: int = 0
    overall_bitrate: int = 0
    video_streams: list[EncoreVideoStream] = field(default_factory=list)
    audio_streams: list[EncoreAudioStream] = field(default_factory=list)


def _input_to_dict(item: EncoreInput) -> dict[str, Any]:
    result: dict[str, Any] = {"uri": item.uri}
    if item.seek_to:
        result["seekTo"] = item.seek_to
    result["copyTs"] = item.copy_ts
    result["type"] = item.media_type
    return result


def _input_from_dict(data: Any) -> EncoreInput:
    data = _mapping(data)
    return EncoreInput(
        uri=data.get("uri") or "",
        seek_to=float(data.get("seekTo") or 0.0),
        copy_ts=bool(data.get("copyTs", False)),
        media_type=data.get("type") or "",
    )


def _video_from_dict(data: Any) -> EncoreVideoStream:
    data = _mapping(data)
    return EncoreVideoStream(
        codec=data.get("codec") or "",
        width=int(data.get("width") or 0),
        height=int(data.get("height") or 0),
        frame_rate=data.get("frameRate") or "",
    )


def _audio_from_dict(data: Any) -> EncoreAudioStream:
    data = _mapping(data)
    return EncoreAudioStream(
        codec=data.get("codec") or "",
        channels=int(data.get("channels") or 0),
        sampling_rate=int(data.get("samplingRate") or 0),
        profile=data.get("profile") or "",
    )


def _output_to_dict(output: EncoreOutput) -> dict[str, Any]:
    return {
        "type": output.media_type,
        "format": output.format,
        "file": output.file,
        "fileSize": output.file_size,
        "overallBitrate": output.overall_bitrate,
        "videoStreams": [
            {"codec": s.codec, "width": s.width, "height": s.height, "frameRate": s.frame_rate}
            for s in output.video_streams
        ],
        "audioStreams": [
            {
                "codec": s.codec,
                "channels": s.channels,
                "samplingRate": s.sampling_rate,
                "profile": s.profile,
            }
            for s in output.audio_streams
        ],
    }


def _output_from_dict(data: Any) -> EncoreOutput:
    data = _mapping(data)
    return EncoreOutput(
        media_type=data.get("type") or "",
        format=data.get("format") or "",
        file=data.get("file") or "",
        file_size=int(data.get("fileSize") or 0),
        overall_bitrate=int(data.get("overallBitrate") or 0),
        video_streams=[_video_from_dict(s) for s in data.get("videoStreams") or []],
        audio_streams=[_audio_from_dict(s) for s in data.get("audioStreams") or []],
    )


@dataclass
class EncoreJob:
    id: str = ""
    external_id: str = ""
    profile: str = ""
    output_folder: str = ""
    base_name: str = ""
    status: str = ""
    inputs: list[EncoreInput] = field(default_factory=list)
    outputs: list[EncoreOutput] = field(default_factory=list)
    progress_callback_uri: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.id:
            result["id"] = self.id
        if self.external_id:
            result["externalId"] = self.external_id
        result["profile"] = self.profile
        result["outputFolder"] = self.output_folder
        result["baseName"] = self.base_name
        if self.status:
            result["status"] = self.status
        if self.inputs:
            result["inputs"] = [_input_to_dict(i) for i in self.inputs]
        if self.outputs:
            result["output"] = [_output_to_dict(o) for o in self.outputs]
        if self.progress_callback_uri:
            result["progressCallbackUri"] = self.progress_callback_uri
        return result

    @classmethod
    def from_dict(cls, data: Any) -> EncoreJob:
        data = _mapping(data)
        return cls(
            id=data.get("id") or "",
            external_id=data.get("externalId") or "",
            profile=data.get("profile") or "",
            output_folder=data.get("outputFolder") or "",
            base_name=data.get("baseName") or "",
            status=data.get("status") or "",
            inputs=[_input_from_dict(i) for i in data.get("inputs") or []],
            outputs=[_output_from_dict(o) for o in data.get("output") or []],
            progress_callback_uri=data.get("progressCallbackUri") or "",
        )

    def get_frame_rates(self) -> list[float]:
        """Distinct frame rates of all video streams, in ascending order."""
        return sorted(
            {
                parse_frame_rate(stream.frame_rate)
                for output in self.outputs
                for stream in output.video_streams
                if stream.frame_rate
            }
        )

    def get_transcode_status(self, jit_package: bool) -> str:
        if self.status == "SUCCESSFUL":
            return "COMPLETED" if jit_package else "PACKAGING"
        if self.status in ("FAILED", "CANCELLED"):
            return "FAILED"
        if self.status in ("IN_PROGRESS", "QUEUED", "NEW"):
            return "IN_PROGRESS"
        return "UNKNOWN"


class AdServerError(Exception):
    """The ad server answered with a non-OK status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class PackagingSuccessBody:
    url: str = ""
    job_id: str = ""
    output_path: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> PackagingSuccessBody:
        data = _mapping(data)
        return cls(
            url=data.get("url") or "",
            job_id=data.get("jobId") or "",
            output_path=data.get("outputPath") or "",
        )


@dataclass
class FailMessage:
    job_id: str = ""


@dataclass
class PackagingFailureBody:
    message: FailMessage = field(default_factory=FailMessage)

    @classmethod
    def from_dict(cls, data: Any) -> PackagingFailureBody:
        data = _mapping(data)
        message = _mapping(data.get("message"))
        return cls(message=FailMessage(job_id=message.get("jobId") or ""))


@dataclass
class PackagingQueueMessage:
    job_id: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"jobId": self.job_id, "url": self.url}


def transcode_info_from_encore_job(
    job: EncoreJob, jit_packaging: bool, asset_server_url: str
) -> TranscodeInfo:
    """Build the stored transcode info for a finished Encore job."""
    status = job.get_transcode_status(jit_packaging)
    if not job.outputs:
        raise ValueError(f"no outputs found for job {job.id}")
    if not job.outputs[0].video_streams:
        raise ValueError(f"no video streams found for job {job.id}")
    first = job.outputs[0].video_streams[0]
    width = first.width or 1920
    height = first.height or 1080
    url = ""
    if jit_packaging:
        url = create_package_url(asset_server_url, job.output_folder, job.base_name)
    return TranscodeInfo(
        url=url,
        aspect_ratio=calculate_aspect_ratio(width, height),
        frame_rates=job.get_frame_rates(),
        status=status,
    )


def calculate_aspect_ratio(width: int, height: int) -> str:
    if width == 0 or height == 0:
        return "0:0"
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def _parse_float(text: str) -> float | None:
    if text != text.strip() or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _round_half_away(value: float) -> float:
    if not math.isfinite(value):
        return value
    return math.copysign(math.floor(abs(value) + 0.5), value)


def parse_frame_rate(framerate_str: str) -> float:
    """Parse "numerator/denominator" into a rate rounded to two decimals; 0.0 if invalid."""
    parts = framerate_str.split("/")
    numerator = _parse_float(parts[0])
    if numerator is None:
        return 0.0
    denominator = 1.0
    if len(parts) == 2:
        parsed = _parse_float(parts[1])
        if parsed is not None:
            denominator = parsed
    if denominator == 0:
        rate = math.copysign(math.inf, numerator) if numerator else math.nan
    else:
        rate = numerator / denominator
    return _round_half_away(rate * 100.0) / 100.0


def create_package_url(asset_server_url: str, output_folder: str, base_name: str) -> str:
    return join_url(asset_server_url, output_folder, base_name + ".m3u8")