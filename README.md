# adnormalizer

An HTTP service that sits between a video player and an ad server. It fetches
VAST or VMAP responses from the ad server and rewrites the media files so that
they point to HLS renditions of each creative. Creatives that are not yet
transcoded are left out of the response and submitted to an Encore
transcoding service. Transcoding state is kept in Valkey or Redis.

## Installation

```
pip install .
```

## Configuration

Settings are read from the environment, and from a `.env` file if there is one.

Required:

- `ENCORE_URL`: base URL of the Encore transcoding service
- `REDIS_URL`: URL of the Valkey or Redis instance, e.g. `redis://localhost:6379`
- `AD_SERVER_URL`: URL of the upstream ad server
- `OUTPUT_BUCKET_URL`: bucket that receives transcoded output, e.g. `s3://bucket/output`
- `ASSET_SERVER_URL`: URL the transcoded assets are served from
- `ROOT_URL`: public URL of this service, used for Encore callbacks

Optional:

- `PORT`: listening port (default `8000`)
- `KEY_FIELD`: how creatives are identified: `universalAdId` (default), `url` or `resolution`
- `KEY_REGEX`: characters removed from the key (default `[^a-zA-Z0-9]`)
- `ENCORE_PROFILE`: transcoding profile (default `program`)
- `JIT_PACKAGE`: `true` to serve assets through just-in-time packaging
- `PACKAGING_QUEUE`: queue name for packaging jobs (default `package`)
- `IN_FLIGHT_TTL`: seconds (default `3600`)
- `REDIS_CLUSTER`: `true` if the store is a cluster
- `OSC_ACCESS_TOKEN`, `ENVIRONMENT`, `VERSION`, `INSTANCEID`
- `LOG_LEVEL`: `DEBUG`, `INFO`, `WARN` or `ERROR`

## Running

```
ad-normalizer
```

## Endpoints

- `GET /api/v1/vast`: normalized VAST; send `Accept: application/json` to get a list
  of asset descriptions (`URI`, `DURATION`) for HLS interstitials instead
- `GET /api/v1/vmap`: normalized VMAP
- `POST /encoreCallback`: progress callbacks from Encore
- `POST /packagerCallback/success` and `/packagerCallback/failure`: packager callbacks
- `GET /ping`: health check

Query parameters are passed on to the ad server. A `subdomain` parameter replaces
the subdomain of the ad server host.

## Use as a library

```python
from adnormalizer.config import read_config
from adnormalizer.app import build_api, create_app

config = read_config()
app = create_app(build_api(config), config.environment)
```

`app` is a WSGI application and can be served by any WSGI server.