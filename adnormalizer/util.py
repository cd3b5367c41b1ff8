"""Helpers for picking creatives out of VAST documents and rewriting them."""

from __future__ import annotations

import dataclasses
import re
import uuid
from collections.abc import Mapping
from urllib.parse import urlsplit, urlunsplit

from .structure import AssetDescription, ManifestAsset, join_url
from .vast import Ad, MediaFile, Vast


def get_best_media_file(ad: Ad) -> MediaFile:
    """The media file with the highest bitrate, or an empty one."""
    best = MediaFile()
    for media in ad.media_files():
        if media.bitrate > best.bitrate:
            best = media
    return best


def _get_key(key_field: str, key_regex: str, ad: Ad, media_file: MediaFile) -> str:
    if key_field == "resolution":
        return f"{media_file.width}x{media_file.height}"
    if key_field == "url":
        return re.sub(key_regex, "", media_file.text)
    return re.sub(key_regex, "", ad.universal_ad_id())


def get_creatives(vast: Vast, key_field: str, key_regex: str) -> dict[str, ManifestAsset]:
    creatives: dict[str, ManifestAsset] = {}
    for ad in vast.ads:
        media = get_best_media_file(ad)
        key = _get_key(key_field, key_regex, ad, media)
        creatives[key] = ManifestAsset(creative_id=key, master_playlist_url=media.text)
    return creatives


def convert_to_asset_descriptions(vast: Vast) -> list[AssetDescription]:
    return [
        AssetDescription(uri=get_best_media_file(ad).text, duration=ad.duration())
        for ad in vast.ads
    ]


def replace_media_files(
    vast: Vast, assets: Mapping[str, ManifestAsset], key_regex: str, key_field: str
) -> None:
    """Keep only ads with a known asset, pointing their media file at it."""
    kept = []
    for ad in vast.ads:
        media = get_best_media_file(ad)
        asset = assets.get(_get_key(key_field, key_regex, ad, media))
        if asset is None:
            continue
        ad.set_media_files(
            [
                dataclasses.replace(
                    media,
                    text=asset.master_playlist_url,
                    media_type="application/x-mpegURL",
                )
            ]
        )
        kept.append(ad)
    vast.ads = kept


def create_output_url(bucket: str, folder: str) -> str:
    return join_url(bucket, folder, str(uuid.uuid4()), "/")


def replace_subdomain(url: str, subdomain: str) -> str:
    """Replace the first host label, or prepend one when the host has fewer than three."""
    parts = urlsplit(url)
    userinfo, at, host = parts.netloc.rpartition("@")
    labels = host.split(".")
    if len(labels) > 2:
        labels[0] = subdomain
    else:
        labels.insert(0, subdomain)
    return urlunsplit(parts._replace(netloc=userinfo + at + ".".join(labels)))