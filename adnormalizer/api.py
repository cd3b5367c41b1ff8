"""HTTP handlers: ad server proxying, Encore callbacks and packager callbacks."""

from __future__ import annotations

import gzip
import json
import zlib
from collections.abc import Iterable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit

import requests
from werkzeug.datastructures import MultiDict
from werkzeug.wrappers import Request, Response

from .config import AdNormalizerConfig
from .encore import EncoreHandler
from .logger import get_logger
from .store import Store
from .structure import (
    AdServerError,
    EncoreJobProgress,
    ManifestAsset,
    PackagingFailureBody,
    PackagingQueueMessage,
    PackagingSuccessBody,
    TranscodeInfo,
    create_package_url,
    join_url,
    transcode_info_from_encore_job,
)
from .util import convert_to_asset_descriptions, get_creatives, replace_media_files, replace_subdomain
from .vast import Vast, VastDecodeError, decode_vast, decode_vmap

_log = get_logger("api")

USER_AGENT = "eyevinn/ad-normalizer"
USER_AGENT_HEADER = "X-Device-User-Agent"
FORWARDED_FOR_HEADER = "X-Forwarded-For"


def _error(message: str, status: int) -> Response:
    return Response(
        message + "\n",
        status=status,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
        },
    )


def _ok() -> Response:
    return Response(b"", status=200)


def decompress_gzip(data: bytes) -> bytes:
    """Decompress a gzip body, raising ValueError if it is not valid gzip."""
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise ValueError(f"invalid gzip data: {exc}") from exc


def _merge_query(url: str, args: MultiDict[str, str]) -> str:
    parts = urlsplit(url)
    params: dict[str, list[str]] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        params.setdefault(key, []).append(value)
    for key, values in args.lists():
        if key.lower() == "subdomain":
            continue
        params.setdefault(key, []).extend(values)
    query = urlencode([(key, value) for key in sorted(params) for value in params[key]])
    return parts._replace(query=query).geturl()


def _decode_json(data: bytes) -> Any:
    return json.loads(data.decode("utf-8"))


class API:
    """The request handlers of the service, sharing a store and an Encore client."""

    def __init__(
        self,
        store: Store,
        config: AdNormalizerConfig,
        encore_handler: EncoreHandler,
        session: requests.Session | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self.encore_handler = encore_handler
        self.session = session if session is not None else requests.Session()
        self.executor = (
            executor
            if executor is not None
            else ThreadPoolExecutor(max_workers=8, thread_name_prefix="encore-dispatch")
        )
        self.ad_server_url = config.ad_server_url
        self.asset_server_url = config.asset_server_url
        self.key_field = config.key_field
        self.key_regex = config.key_regex
        self.jit_package = config.jit_package
        self.package_queue = config.packaging_queue_name
        self.encore_url = config.encore_url

    # Ad server requests

    def handle_vmap(self, request: Request) -> Response:
        _log.debug("Handling VMAP request", extra={"path": request.path})
        try:
            body = self._fetch_ad_server(request)
        except AdServerError as exc:
            _log.error(
                "ad server error",
                extra={"statusCode": exc.status_code, "error": exc.message},
            )
            return _error(exc.message, exc.status_code)
        except requests.RequestException as exc:
            _log.error("error fetching VMAP data", extra={"error": str(exc)})
            return _error("Failed to fetch VMAP data", 500)
        try:
            vmap = decode_vmap(body)
        except VastDecodeError as exc:
            _log.error("failed to decode VMAP data", extra={"error": str(exc)})
            return _error("Failed to decode VMAP data", 500)
        for ad_break in vmap.ad_breaks:
            _log.debug("Processing ad break", extra={"breakId": ad_break.id})
            if ad_break.vast is not None:
                self.find_missing_and_dispatch_jobs(ad_break.vast)
        return Response(
            vmap.to_bytes(), status=200, headers={"Content-Type": "application/xml"}
        )

    def handle_vast(self, request: Request) -> Response:
        _log.debug("Handling VAST request", extra={"path": request.path})
        try:
            body = self._fetch_ad_server(request)
        except (AdServerError, requests.RequestException) as exc:
            _log.error("failed to fetch VAST data", extra={"error": str(exc)})
            return _error("Failed to fetch VAST data", 500)
        try:
            vast = decode_vast(body)
        except VastDecodeError as exc:
            _log.error(
                "failed to decode VAST data",
                extra={"error": str(exc), "responseBody": body.decode("utf-8", "replace")},
            )
            return _error("Failed to decode VAST data", 500)
        _log.debug("Decoded VAST data", extra={"adCount": len(vast.ads)})
        self.find_missing_and_dispatch_jobs(vast)
        if request.headers.get("Accept", "") == "application/json":
            descriptions = [d.to_dict() for d in convert_to_asset_descriptions(vast)]
            return Response(
                json.dumps(descriptions),
                status=200,
                headers={"Content-Type": "application/json"},
            )
        return Response(vast.to_bytes(), status=200, headers={"Content-Type": "application/xml"})

    def _fetch_ad_server(self, request: Request) -> bytes:
        url = self.ad_server_url
        subdomain = request.args.get("subdomain", "")
        if subdomain:
            url = replace_subdomain(url, subdomain)
            _log.debug("New URL after subdomain replacement", extra={"newUrl": url})
        url = _merge_query(url, request.args)
        headers = {"User-Agent": USER_AGENT}
        device_user_agent = request.headers.get(USER_AGENT_HEADER, "")
        if device_user_agent:
            headers[USER_AGENT_HEADER] = device_user_agent
        headers[FORWARDED_FOR_HEADER] = request.headers.get(FORWARDED_FOR_HEADER, "")
        headers["Accept"] = "application/xml"
        headers["Accept-Encoding"] = "gzip"
        _log.debug("Making ad server request", extra={"url": url})
        response = self.session.get(url, headers=headers)
        with response:
            if response.status_code != 200:
                _log.error(
                    "failed to fetch ad server data",
                    extra={"statusCode": response.status_code},
                )
                raise AdServerError(response.status_code, "Failed to fetch ad server data")
            # Content-Encoding gzip is undone by the HTTP client.
            return response.content

    def find_missing_and_dispatch_jobs(self, vast: Vast) -> None:
        """Start transcoding of unknown creatives and keep only the ready ones in the VAST."""
        _log.debug("Finding missing creatives in VAST", extra={"adCount": len(vast.ads)})
        creatives = get_creatives(vast, self.key_field, self.key_regex)
        found, missing = self.partition_creatives(creatives)
        _log.debug(
            "partitioned creatives", extra={"found": len(found), "missing": len(missing)}
        )
        for creative in missing.values():
            self.executor.submit(self._dispatch_job, creative)
        replace_media_files(vast, found, self.key_regex, self.key_field)

    def _dispatch_job(self, creative: ManifestAsset) -> None:
        try:
            job = self.encore_handler.create_job(creative)
        except Exception as exc:
            _log.error(
                "failed to create encore job",
                extra={"error": str(exc), "creativeId": creative.creative_id},
            )
            return
        _log.debug(
            "created encore job",
            extra={"creativeId": creative.creative_id, "jobId": job.id},
        )
        try:
            self.store.set(
                creative.creative_id,
                TranscodeInfo(url=creative.master_playlist_url, status="QUEUED"),
            )
        except Exception as exc:
            _log.error(
                "failed to store queued creative",
                extra={"error": str(exc), "creativeId": creative.creative_id},
            )

    def partition_creatives(
        self, creatives: Mapping[str, ManifestAsset]
    ) -> tuple[dict[str, ManifestAsset], dict[str, ManifestAsset]]:
        """Split creatives into completed ones (with their stored URL) and unknown ones."""
        found: dict[str, ManifestAsset] = {}
        missing: dict[str, ManifestAsset] = {}
        for creative in creatives.values():
            try:
                info = self.store.get(creative.creative_id)
            except Exception as exc:
                _log.error(
                    "failed to get creative from store",
                    extra={"error": str(exc), "creativeId": creative.creative_id},
                )
                continue
            if info is None:
                missing[creative.creative_id] = ManifestAsset(
                    creative.creative_id, creative.master_playlist_url
                )
            elif info.status == "COMPLETED":
                found[creative.creative_id] = ManifestAsset(creative.creative_id, info.url)
        return found, missing

    # Encore callbacks

    def handle_encore_callback(self, request: Request) -> Response:
        body = request.get_data()
        if request.headers.get("Content-Encoding", "") == "gzip":
            try:
                body = decompress_gzip(body)
            except ValueError as exc:
                _log.error(
                    "failed to decompress gzip request body", extra={"error": str(exc)}
                )
                return _error("Failed to decompress gzip request body", 500)
        try:
            progress = EncoreJobProgress.from_dict(_decode_json(body))
        except (ValueError, TypeError) as exc:
            _log.error("failed to decode job progress", extra={"error": str(exc)})
            return _error("Failed to decode job progress", 400)
        _log.debug(
            "Decoded Encore job progress",
            extra={
                "jobId": progress.job_id,
                "externalId": progress.external_id,
                "status": progress.status,
            },
        )
        try:
            if progress.status == "SUCCESSFUL":
                self._handle_transcode_completed(progress)
            elif progress.status == "FAILED":
                self.store.delete(progress.external_id)
            elif progress.status == "IN_PROGRESS":
                _log.info(
                    "Transcoding progress updated",
                    extra={"creative ID": progress.external_id, "progress": progress.progress},
                )
            else:
                _log.info(
                    "Job status does not match any known status",
                    extra={"status": progress.status},
                )
        except Exception as exc:
            _log.error(
                "failed to handle transcode job progress",
                extra={"error": str(exc), "jobId": progress.job_id},
            )
            return _error("Failed to handle transcode job progress", 500)
        return _ok()

    def _safe_delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except Exception as exc:
            _log.error("failed to delete key", extra={"error": str(exc), "key": key})

    def _handle_transcode_completed(self, progress: EncoreJobProgress) -> None:
        job = self.encore_handler.get_encore_job(progress.job_id)
        try:
            info = transcode_info_from_encore_job(job, self.jit_package, self.asset_server_url)
        except ValueError as exc:
            _log.error(
                "failed to create transcode info from encore job",
                extra={"error": str(exc), "jobId": progress.job_id},
            )
            self._safe_delete(progress.external_id)
            return
        failure: Exception | None = None
        try:
            self.store.set(progress.external_id, info)
        except Exception as exc:
            _log.error(
                "failed to store transcode info",
                extra={"error": str(exc), "creativeId": progress.external_id},
            )
            self._safe_delete(progress.external_id)
            failure = exc
        if not self.jit_package:
            _log.debug(
                "JIT packaging is disabled, queueing packaging job",
                extra={"creativeId": progress.external_id},
            )
            message = PackagingQueueMessage(
                job_id=progress.job_id,
                url=join_url(self.encore_url, "encoreJobs", progress.job_id),
            )
            failure = None
            try:
                self.store.enqueue_packaging_job(self.package_queue, message)
            except Exception as exc:
                failure = exc
        if failure is not None:
            raise failure

    # Packager callbacks

    def handle_packaging_failure(self, request: Request) -> Response:
        try:
            body = PackagingFailureBody.from_dict(_decode_json(request.get_data()))
        except (ValueError, TypeError):
            return _error("Failed to decode request body", 400)
        try:
            job = self.encore_handler.get_encore_job(body.message.job_id)
        except Exception:
            return _error("Failed to get Encore job", 404)
        if not job.external_id:
            return _error("Encore job does not have an external ID", 404)
        try:
            self.store.delete(job.external_id)
        except Exception:
            return _error("Failed to delete job from Valkey store", 500)
        _log.info(
            "Packaging failure handled successfully", extra={"creativeId": job.external_id}
        )
        return _ok()

    def handle_packaging_success(self, request: Request) -> Response:
        try:
            body = PackagingSuccessBody.from_dict(_decode_json(request.get_data()))
        except (ValueError, TypeError):
            return _error("Failed to decode request body", 400)
        _log.debug("getting Encore job for packaging success", extra={"jobId": body.job_id})
        try:
            job = self.encore_handler.get_encore_job(body.job_id)
        except Exception:
            return _error("Failed to get Encore job", 404)
        if not job.external_id:
            return _error("Encore job does not have an external ID", 404)
        try:
            info = transcode_info_from_encore_job(job, self.jit_package, self.asset_server_url)
        except ValueError as exc:
            _log.error(
                "Failed to create transcode info from Encore job",
                extra={"error": str(exc), "jobId": job.id},
            )
            self._safe_delete(job.external_id)
            return _error("Failed to create transcode info from Encore job", 500)
        package_url = create_package_url(self.asset_server_url, body.output_path, "index")
        info.url = package_url
        info.status = "COMPLETED"
        try:
            self.store.set(job.external_id, info)
        except Exception:
            return _error("Failed to save job to Valkey store", 500)
        _log.info(
            "Packaging success handled successfully",
            extra={"creativeId": job.external_id, "packageUrl": package_url},
        )
        return _ok()


def _iter_lines(items: Iterable[str]) -> list[str]:
    return [item for item in items if item]