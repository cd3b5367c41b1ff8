"""A small VAST/VMAP document model that keeps the original XML intact."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError, fromstring

VMAP_NAMESPACE = "http://www.iab.net/videosuite/vmap"
ET.register_namespace("vmap", VMAP_NAMESPACE)

_DURATION_RE = re.compile(r"(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)")
_KNOWN_ATTRS = ("delivery", "type", "width", "height", "bitrate")


class VastDecodeError(ValueError):
    """The document is not valid VAST or VMAP."""


def _local(tag: str) -> str:
    return tag.rpartition("}")[2]


def _namespace(tag: str) -> str:
    return tag[: tag.index("}") + 1] if tag.startswith("{") else ""


def _children(element: ET.Element | None, name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local(child.tag) == name]


def _child(element: ET.Element | None, name: str) -> ET.Element | None:
    found = _children(element, name)
    return found[0] if found else None


def _int(value: str | None) -> int:
    try:
        return int((value or "0").strip())
    except ValueError:
        return 0


def parse_duration(text: str) -> float:
    """Parse an HH:MM:SS(.mmm) duration into seconds."""
    match = _DURATION_RE.fullmatch(text.strip())
    if not match:
        raise ValueError(f"invalid duration {text!r}")
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


@dataclass
class MediaFile:
    bitrate: int = 0
    width: int = 0
    height: int = 0
    text: str = ""
    media_type: str = ""
    delivery: str = ""
    extra_attributes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_element(cls, element: ET.Element) -> MediaFile:
        attrs = element.attrib
        return cls(
            bitrate=_int(attrs.get("bitrate")),
            width=_int(attrs.get("width")),
            height=_int(attrs.get("height")),
            text=(element.text or "").strip(),
            media_type=attrs.get("type", ""),
            delivery=attrs.get("delivery", ""),
            extra_attributes={k: v for k, v in attrs.items() if k not in _KNOWN_ATTRS},
        )

    def to_element(self, tag: str) -> ET.Element:
        element = ET.Element(tag)
        element.set("delivery", self.delivery)
        element.set("type", self.media_type)
        element.set("width", str(self.width))
        element.set("height", str(self.height))
        element.set("bitrate", str(self.bitrate))
        for key, value in self.extra_attributes.items():
            element.set(key, value)
        element.text = self.text
        return element


class Ad:
    """One Ad element of a VAST document."""

    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def id(self) -> str:
        return self.element.get("id", "")

    @property
    def sequence(self) -> int:
        return _int(self.element.get("sequence"))

    def _creatives(self) -> list[ET.Element]:
        inline = _child(self.element, "InLine")
        return _children(_child(inline, "Creatives"), "Creative")

    def media_files(self) -> list[MediaFile]:
        return [
            MediaFile.from_element(media)
            for creative in self._creatives()
            for media in _children(_child(_child(creative, "Linear"), "MediaFiles"), "MediaFile")
        ]

    def set_media_files(self, media_files: list[MediaFile]) -> None:
        """Replace the media files of the first creative's linear element."""
        creatives = self._creatives()
        linear = _child(creatives[0], "Linear") if creatives else None
        if linear is None:
            raise ValueError("ad has no linear creative")
        container = _child(linear, "MediaFiles")
        if container is None:
            container = ET.SubElement(linear, _namespace(linear.tag) + "MediaFiles")
        for old in _children(container, "MediaFile"):
            container.remove(old)
        tag = _namespace(container.tag) + "MediaFile"
        for media in media_files:
            container.append(media.to_element(tag))

    def universal_ad_id(self) -> str:
        creatives = self._creatives()
        if not creatives:
            raise IndexError("ad has no creatives")
        node = _child(creatives[0], "UniversalAdId")
        return (node.text or "").strip() if node is not None else ""

    def duration(self) -> float:
        """Duration of the first linear creative in seconds, 0.0 when absent."""
        creatives = self._creatives()
        linear = _child(creatives[0], "Linear") if creatives else None
        node = _child(linear, "Duration")
        if node is None or not (node.text or "").strip():
            return 0.0
        return parse_duration(node.text or "")


class Vast:
    """A VAST document; its ads may be replaced through the ``ads`` list."""

    def __init__(self, element: ET.Element) -> None:
        self.element = element
        self.ads = [Ad(child) for child in _children(element, "Ad")]

    @property
    def version(self) -> str:
        return self.element.get("version", "")

    def _sync(self) -> None:
        existing = _children(self.element, "Ad")
        position = list(self.element).index(existing[0]) if existing else len(self.element)
        for old in existing:
            self.element.remove(old)
        for offset, ad in enumerate(self.ads):
            self.element.insert(position + offset, ad.element)

    def to_bytes(self) -> bytes:
        self._sync()
        return ET.tostring(self.element, encoding="utf-8")


class AdBreak:
    def __init__(self, element: ET.Element) -> None:
        self.element = element
        source = _child(element, "AdSource")
        vast = _child(_child(source, "VASTAdData"), "VAST")
        self.vast = Vast(vast) if vast is not None else None

    @property
    def id(self) -> str:
        return self.element.get("breakId", "")

    @property
    def break_type(self) -> str:
        return self.element.get("breakType", "")

    @property
    def time_offset(self) -> str:
        return self.element.get("timeOffset", "")


class Vmap:
    def __init__(self, element: ET.Element) -> None:
        self.element = element
        self.ad_breaks = [AdBreak(child) for child in _children(element, "AdBreak")]

    def to_bytes(self) -> bytes:
        for ad_break in self.ad_breaks:
            if ad_break.vast is not None:
                ad_break.vast._sync()
        return ET.tostring(self.element, encoding="utf-8")


def _parse(data: bytes | str, root_name: str) -> ET.Element:
    try:
        root = fromstring(data)
    except (ParseError, DefusedXmlException) as exc:
        raise VastDecodeError(f"could not parse {root_name}: {exc}") from exc
    if _local(root.tag) != root_name:
        raise VastDecodeError(f"expected {root_name} root element, got {_local(root.tag)}")
    return root


def decode_vast(data: bytes | str) -> Vast:
    return Vast(_parse(data, "VAST"))


def decode_vmap(data: bytes | str) -> Vmap:
    return Vmap(_parse(data, "VMAP"))