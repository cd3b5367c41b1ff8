"""Client for submitting and fetching Encore transcoding jobs."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

import requests

from .logger import get_logger
from .structure import EncoreInput, EncoreJob, ManifestAsset, join_url
from .util import create_output_url

_log = get_logger("encore")


class EncoreError(Exception):
    """An Encore request failed."""


class EncoreHandler(Protocol):
    def create_job(self, creative: ManifestAsset) -> EncoreJob: ...

    def get_encore_job(self, job_id: str) -> EncoreJob: ...


class HttpEncoreHandler:
    """Talks to Encore over HTTP; ``token_provider`` yields a service access token."""

    def __init__(
        self,
        session: requests.Session,
        encore_url: str,
        transcoding_profile: str,
        token_provider: Callable[[str], str] | None,
        output_bucket: str,
        root_url: str,
    ) -> None:
        self.session = session
        self.encore_url = encore_url
        self.transcoding_profile = transcoding_profile
        self.token_provider = token_provider
        self.output_bucket = output_bucket
        self.root_url = root_url

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/hal+json", "Content-Type": "application/json"}
        if self.token_provider is not None:
            try:
                headers["x-jwt"] = self.token_provider("encore")
            except Exception as exc:
                raise EncoreError(
                    f"failed to get Service Access Token for Encore: {exc}"
                ) from exc
        return headers

    def create_job(self, creative: ManifestAsset) -> EncoreJob:
        """Submit a job; a failed submission is logged and yields an empty job."""
        job = EncoreJob(
            external_id=creative.creative_id,
            profile=self.transcoding_profile,
            output_folder=create_output_url(self.output_bucket, creative.creative_id),
            base_name=creative.creative_id,
            progress_callback_uri=join_url(self.root_url, "/encoreCallback"),
            inputs=[
                EncoreInput(
                    uri=creative.master_playlist_url,
                    seek_to=0.0,
                    copy_ts=True,
                    media_type="AudioVideo",
                )
            ],
        )
        try:
            return self._submit_job(job)
        except EncoreError as exc:
            _log.error("Failed to submit Encore job", extra={"error": str(exc)})
            return EncoreJob()

    def get_encore_job(self, job_id: str) -> EncoreJob:
        url = join_url(self.encore_url, "/encoreJobs", job_id)
        _log.debug("Getting Encore job", extra={"jobId": job_id, "url": url})
        headers = self._headers()
        try:
            response = self.session.get(url, headers=headers)
        except requests.RequestException as exc:
            raise EncoreError(f"failed to get Encore job: {exc}") from exc
        with response:
            if response.status_code != 200:
                raise EncoreError(
                    f"failed to get Encore job, status code: {response.status_code}"
                )
            try:
                return EncoreJob.from_dict(response.json())
            except ValueError as exc:
                raise EncoreError("failed to decode Encore job response") from exc

    def _submit_job(self, job: EncoreJob) -> EncoreJob:
        headers = self._headers()
        try:
            response = self.session.post(
                join_url(self.encore_url, "/encoreJobs"), json=job.to_dict(), headers=headers
            )
        except requests.RequestException as exc:
            raise EncoreError(f"failed to submit Encore job: {exc}") from exc
        with response:
            if response.status_code != 201:
                _log.error(
                    "Failed to submit Encore job",
                    extra={"statusCode": response.status_code, "error": response.text},
                )
                raise EncoreError(
                    f"failed to submit Encore job, status code: {response.status_code}"
                )
            try:
                created = EncoreJob.from_dict(response.json())
            except ValueError as exc:
                raise EncoreError("failed to decode Encore job response") from exc
        _log.info("Successfully submitted Encore job", extra={"jobId": created.external_id})
        return created