import json
import re
import uuid

import pytest
import requests
import responses

from adnormalizer.encore import EncoreError, HttpEncoreHandler
from adnormalizer.structure import ManifestAsset

ENCORE = "http://encore.example.com"


def make_handler(token_provider=None):
    return HttpEncoreHandler(
        requests.Session(),
        ENCORE,
        "test-profile",
        token_provider,
        "s3://example.com/transcoding-output/",
        "https://ad-normalizer.osaas.io",
    )


@pytest.fixture
def encore_server():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def _post_callback(request):
    if request.headers.get("Content-Type") != "application/json":
        return 400, {}, "Invalid request"
    if request.headers.get("Accept") != "application/hal+json":
        return 400, {}, "Invalid request"
    posted = json.loads(request.body)
    if not posted.get("externalId"):
        return 400, {}, "Missing required field: externalId"
    posted["id"] = str(uuid.uuid4())
    return 201, {"Content-Type": "application/hal+json"}, json.dumps(posted)


def _job_body():
    return {
        "id": str(uuid.uuid4()),
        "externalId": "test-job",
        "profile": "test-profile",
        "outputFolder": "s3://example.com/transcoding-output/test-job/",
        "baseName": "test-creative-id",
        "progressCallbackUri": "http://example.com/encoreCallback",
        "inputs": [{"uri": "http://example.com/test.mp4", "seekTo": 0.0, "copyTs": True}],
    }


def test_create_job(encore_server):
    encore_server.add_callback(
        responses.POST, f"{ENCORE}/encoreJobs", callback=_post_callback
    )
    asset = ManifestAsset("test-creative-id", "http://example.com/test.mp4")
    created = make_handler().create_job(asset)
    assert created.external_id == "test-creative-id"
    assert created.profile == "test-profile"
    assert created.base_name == "test-creative-id"
    assert created.output_folder.startswith("s3://example.com/transcoding-output/test-creative-id/")
    assert created.progress_callback_uri == "https://ad-normalizer.osaas.io/encoreCallback"
    assert len(created.inputs) == 1
    assert created.inputs[0].media_type == "AudioVideo"


def test_create_job_failure_returns_empty_job(encore_server):
    encore_server.add(responses.POST, f"{ENCORE}/encoreJobs", status=500)
    created = make_handler().create_job(ManifestAsset("c", "http://example.com/a.mp4"))
    assert created.external_id == ""
    assert created.id == ""


def test_get_job(encore_server):
    encore_server.add(responses.GET, re.compile(f"{ENCORE}/encoreJobs/.+"), json=_job_body())
    job_id = str(uuid.uuid4())
    job = make_handler().get_encore_job(job_id)
    assert job.external_id == "test-job"
    assert encore_server.calls[0].request.url == f"{ENCORE}/encoreJobs/{job_id}"


def test_get_job_sends_token(encore_server):
    encore_server.add(responses.GET, re.compile(f"{ENCORE}/encoreJobs/.+"), json=_job_body())
    job = make_handler(lambda service: "token").get_encore_job("j1")
    assert job.external_id == "test-job"
    assert job.profile == "test-profile"
    assert encore_server.calls[0].request.headers["x-jwt"] == "token"


def test_get_job_errors(encore_server):
    encore_server.add(responses.GET, f"{ENCORE}/encoreJobs/missing", status=404)
    encore_server.add(responses.GET, f"{ENCORE}/encoreJobs/garbled", body="not json")
    handler = make_handler()
    with pytest.raises(EncoreError):
        handler.get_encore_job("missing")
    with pytest.raises(EncoreError):
        handler.get_encore_job("garbled")