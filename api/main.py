# api/main.py
from fastapi import FastAPI, Depends, Query, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import os
from dotenv import load_dotenv
from .auth import get_api_key
from .rate_limit import register_rate_limit, limiter, READ_LIMIT, TRIGGER_LIMIT
from repricer.db import ScraperStateFlag, get_db, get_history
from repricer.errors import PersistenceFailure
from repricer.models import ProductItem, RetailerInfo, ScraperState, to_decimal
import logging
from bson import ObjectId
from pydantic import ValidationError

load_dotenv()
API_PORT = int(os.getenv("API_PORT", "8000"))

app = FastAPI(title="Retailer Repricer API", version="1.0")

register_rate_limit(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)


def product_doc_to_resp(doc):
    """
    Transform a product_items document into an API response dictionary.

    The document goes through the same model the engine uses, so the response
    shows exactly what a catalog pass would see: pack ids defaulted, prices as
    decimal strings and timestamps in ISO 8601.
    """
    item = ProductItem.model_validate(doc)
    return {
        "_id": str(item.source_id),
        "name": item.name,
        "image": item.image_url,
        "retailers": [
            {
                **link.model_dump(mode="json", by_alias=True),
                "comboKey": link.combo_key,
            }
            for link in item.retailers
        ],
    }


def history_doc_to_resp(doc):
    days = doc.get("days") or {}
    return {
        "bucket_id": doc.get("bucket_id"),
        "days": {
            day: {key: str(to_decimal(price)) for key, price in prices.items()}
            for day, prices in sorted(days.items())
        },
    }


@app.get("/scraper/state", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def get_scraper_state(request: Request):
    """Return the current value of the ScraperState flag."""
    state = await ScraperStateFlag().read()
    return {"state": state}


@app.post("/scraper/trigger", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def trigger_pass(request: Request):
    """
    Ask the engine for a catalog pass by setting ScraperState to Pending.

    Returns:
        JSONResponse: 202 with the new state

    Raises:
        HTTPException: 409 if a pass is currently running
        HTTPException: 503 if the flag could not be written

    Note:
        The request is only a signal. The trigger monitor claims it by moving
        the flag to Running and sets Done when the pass ends.
    """
    flag = ScraperStateFlag()
    current = await flag.read()
    if current == ScraperState.RUNNING:
        raise HTTPException(status_code=409, detail="A catalog pass is already running")
    try:
        await flag.write(ScraperState.PENDING)
    except PersistenceFailure as e:
        logger.error(f"Trigger request failed: {e}")
        raise HTTPException(status_code=503, detail="Could not update scraper state")
    return JSONResponse({"state": ScraperState.PENDING.value}, status_code=202)


@app.get("/retailers", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def list_retailers(request: Request):
    db = get_db()
    docs = await db.product_retailers.find({}).sort([("name", 1)]).to_list(length=None)
    return {
        "results": [
            RetailerInfo.model_validate(d).model_dump(by_alias=True) for d in docs
        ]
    }


@app.get("/products", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def list_products(
    request: Request,
    retailer_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
):
    """
    List product items with their retailer links, sorted by name.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        retailer_id (str, optional): Only products linked to this retailer
        page (int): Page number, must be >= 1. Defaults to 1
        page_size (int): Items per page, 1-200. Defaults to 20

    Returns:
        JSONResponse: page, page_size, total and results
    """
    db = get_db()

    q = {}
    if retailer_id:
        q["retailers.retailerId"] = retailer_id

    cursor = db.product_items.find(q).sort([("name", 1)])
    total = await db.product_items.count_documents(q)
    skip = (page - 1) * page_size

    docs = await cursor.skip(skip).limit(page_size).to_list(length=page_size)
    results = []
    for d in docs:
        try:
            results.append(product_doc_to_resp(d))
        except ValidationError as e:
            logger.error(f"Skipping malformed product item {d.get('_id')}: {e}")

    return JSONResponse(
        {
            "page": page,
            "page_size": page_size,
            "total": total,
            "results": results,
        }
    )


@app.get("/products/{product_id}", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def get_product(request: Request, product_id: str):
    db = get_db()
    doc = await db.product_items.find_one({"_id": product_id})
    if not doc and ObjectId.is_valid(product_id):
        doc = await db.product_items.find_one({"_id": ObjectId(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        return product_doc_to_resp(doc)
    except ValidationError as e:
        logger.error(f"Malformed product item {product_id}: {e}")
        raise HTTPException(status_code=422, detail="Product document is malformed")


@app.get("/products/{product_id}/history", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def get_product_history(
    request: Request, product_id: str, bucket: Optional[str] = Query(None)
):
    """
    Return a product's price history, newest bucket first.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        product_id (str): Product item id
        bucket (str, optional): Restrict to one bucket, e.g. ``Q32024``

    Raises:
        HTTPException: 404 if the product has no history (in that bucket)
    """
    docs = await get_history(product_id, bucket)
    if not docs:
        raise HTTPException(status_code=404, detail="No history found")
    return {"product_id": product_id, "buckets": [history_doc_to_resp(d) for d in docs]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=API_PORT)
