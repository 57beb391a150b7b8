"""Shared fixtures: small mapping catalogs served over a mock transport."""

import json

import httpx
import pytest

from src.mapping_store import MappingStore

TVDB_ANIDB_XML = b"""<?xml version="1.0" encoding="utf-8"?>
<anime-list>
  <anime anidbid="1000" tvdbid="100" defaulttvdbseason="1" episodeoffset="" tmdbid="" imdbid="">
    <name>Test Show</name>
  </anime>
  <anime anidbid="1001" tvdbid="100" defaulttvdbseason="2" episodeoffset="">
    <name>Test Show Season 2</name>
  </anime>
  <anime anidbid="1002" tvdbid="100" defaulttvdbseason="2" episodeoffset="12">
    <name>Test Show Season 2 Part 2</name>
  </anime>
  <anime anidbid="2000" tvdbid="300" defaulttvdbseason="a" episodeoffset="">
    <name>Absolute Show</name>
    <mapping-list>
      <mapping anidbseason="1" tvdbseason="3" start="14" end="26" offset="-13"/>
      <mapping anidbseason="0" tvdbseason="0">;1-5;</mapping>
    </mapping-list>
  </anime>
  <anime anidbid="3000" tvdbid="movie" defaulttvdbseason="1">
    <name>A Movie</name>
  </anime>
  <anime anidbid="oops" tvdbid="400" defaulttvdbseason="1">
    <name>Broken Entry</name>
  </anime>
  <anime anidbid="4000" tvdbid="500" defaulttvdbseason="1">
    <name>Not On MAL</name>
  </anime>
</anime-list>
"""

ANIDB_MAL_JSON = json.dumps(
    [
        {"anidb_id": 1000, "mal_id": 200, "type": "TV"},
        {"anidb_id": 1001, "mal_id": 201},
        {"anidb_id": 1002, "mal_id": 202},
        {"anidb_id": 2000, "mal_id": 210},
        {"anidb_id": 1000, "mal_id": 999},
        {"mal_id": 5},
        {"anidb_id": "x", "mal_id": 6},
        "garbage",
    ]
).encode()


def catalog_handler(request: httpx.Request) -> httpx.Response:
    """Serve the XML catalog for .xml URLs and the JSON one otherwise."""
    if request.url.path.endswith(".xml"):
        return httpx.Response(200, content=TVDB_ANIDB_XML)
    return httpx.Response(200, content=ANIDB_MAL_JSON)


@pytest.fixture
def catalog_client():
    """httpx client answering with the sample catalogs."""
    with httpx.Client(transport=httpx.MockTransport(catalog_handler)) as client:
        yield client


@pytest.fixture
def loaded_store(tmp_path, catalog_client):
    """Mapping store with the sample catalogs loaded."""
    store = MappingStore(cache_dir=tmp_path / "mappings", http_client=catalog_client, retries=1)
    store.load()
    return store
