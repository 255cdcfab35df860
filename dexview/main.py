"""
Dex View - FastAPI application
Thin JSON surface over the catalog client for the mobile UI
"""
import json
import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from dexview.catalog_client import CatalogClient, get_catalog_client
from dexview.errors import ClientError, FetchError
from config.settings import settings

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "Dex View"

logger = logging.getLogger("main")

app = FastAPI(
    title=APP_NAME,
    description="Paginated, searchable, filterable PokeAPI data",
    version=APP_VERSION,
)


def _raise_for_fetch_error(e: FetchError) -> None:
    """Translate a terminal fetch error into an HTTP error with a retry hint."""
    if isinstance(e, ClientError):
        raise HTTPException(status_code=e.status, detail=str(e))
    raise HTTPException(
        status_code=502,
        detail={"message": str(e), "retryable": True},
    )


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "source": "pokeapi"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {"name": APP_NAME, "version": APP_VERSION}


@app.get("/pokemon")
def list_pokemon(
    limit: int = Query(settings.page_limit, ge=1, le=100),
    offset: int = Query(0, ge=0),
    client: CatalogClient = Depends(get_catalog_client),
):
    """One page of the pokemon list."""
    try:
        page = client.list(limit=limit, offset=offset)
    except FetchError as e:
        _raise_for_fetch_error(e)
    data = page.model_dump()
    data["hasNextPage"] = page.has_next_page
    return data


@app.get("/pokemon/{name_or_id}")
def pokemon_detail(name_or_id: str, client: CatalogClient = Depends(get_catalog_client)):
    """Pokemon details by name or id."""
    try:
        detail = client.detail(name_or_id)
    except FetchError as e:
        _raise_for_fetch_error(e)
    return detail.model_dump(by_alias=True)


@app.get("/types")
def list_types(client: CatalogClient = Depends(get_catalog_client)):
    """All types, for the filter picker."""
    try:
        types = client.all_categories()
    except FetchError as e:
        _raise_for_fetch_error(e)
    return {"results": [t.model_dump() for t in types]}


@app.get("/types/{name}")
def type_detail(name: str, client: CatalogClient = Depends(get_catalog_client)):
    """A type and its member list."""
    try:
        details = client.by_category(name)
    except FetchError as e:
        _raise_for_fetch_error(e)
    return details.model_dump()


@app.get("/types/{name}/pokemon")
def filter_by_type(
    name: str,
    concurrency: int = Query(5, ge=1, le=20),
    client: CatalogClient = Depends(get_catalog_client),
):
    """
    Stream the details of every member of a type as NDJSON.

    Lines are emitted in completion order as the worker pool finishes them.
    """
    try:
        job = client.filter_by_category(name, concurrency=concurrency)
    except FetchError as e:
        _raise_for_fetch_error(e)

    def stream():
        for record in job:
            yield json.dumps(record.model_dump(by_alias=True)) + "\n"
        if job.failures:
            logger.info(f"Type filter '{name}' finished with {len(job.failures)} failed items")

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@app.get("/cache/stats")
def cache_stats(client: CatalogClient = Depends(get_catalog_client)):
    """Get cache statistics."""
    return client.get_cache_stats()


@app.delete("/cache")
def clear_cache(client: CatalogClient = Depends(get_catalog_client)):
    """Wipe the local response cache."""
    client.clear_cache()
    return {"status": "cleared"}
