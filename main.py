import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database import close_client, create_document, get_client, get_db, get_document, get_documents, serialize_document
from errors import DatabaseUnavailable
from forms import parse_form, take_first
from logging_setup import setup_logging
from schemas import Auction, Bid

logger = logging.getLogger(__name__)

ADD_BID_PATH = "/api/add-bid"
BID_FIELDS = ("auctionId", "bidderId", "itemName", "itemDescription")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    try:
        yield
    finally:
        close_client()


app = FastAPI(title="Auction Item Listing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Stored item images are served back at /uploads/<filename>
app.mount(
    config.UPLOAD_URL_PREFIX,
    StaticFiles(directory=config.UPLOAD_DIR, check_dir=False),
    name="uploads",
)


def message_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"message": message, **extra}))


@app.exception_handler(DatabaseUnavailable)
async def database_unavailable_handler(request: Request, exc: DatabaseUnavailable):
    logger.error("Database unavailable while handling %s %s: %s", request.method, request.url.path, exc)
    return message_response(500, "Database not available")


class CreateAuctionRequest(BaseModel):
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def auction_status(start_time: Optional[datetime], end_time: Optional[datetime], now: Optional[datetime] = None) -> str:
    """scheduled | live | ended, from the auction's time window."""
    now = now or datetime.now(timezone.utc)
    if end_time is not None and now > _as_utc(end_time):
        return "ended"
    if start_time is not None and _as_utc(start_time) <= now:
        return "live"
    return "scheduled"


@app.get("/")
def read_root():
    return {"message": "Auction Item Listing API is running"}


@app.post(ADD_BID_PATH)
async def add_bid(request: Request, db: Database = Depends(get_db)):
    """Create a bid (an item listing for an auction) from a multipart form."""
    parsed = await parse_form(request, file_fields=("image",))
    if not parsed.ok:
        logger.error("Error parsing form data: %s", parsed.error)
        return message_response(500, "Error parsing form data")

    try:
        values = {name: take_first(parsed.fields.get(name)) for name in BID_FIELDS}
        if not all(values.values()):
            parsed.discard_files()
            return message_response(400, "Missing required fields")

        image = take_first(parsed.files.get("image"))
        item_image = image.url if image else None

        auction = await run_in_threadpool(get_document, db, "auction", values["auctionId"])
        if not auction:
            parsed.discard_files()
            return message_response(404, "Auction not found")

        bid = Bid(
            auction=str(auction["_id"]),
            bidder=values["bidderId"],
            itemName=values["itemName"],
            itemDescription=values["itemDescription"],
            itemImage=item_image,
        )
        stored = await run_in_threadpool(create_document, db, "bid", bid)
    except Exception:
        logger.exception("Error adding bid")
        parsed.discard_files()
        return message_response(500, "Error adding bid")

    logger.info("Added bid %s to auction %s", stored["_id"], stored["auction"])
    return message_response(200, "Bid added successfully", bid=serialize_document(stored))


@app.exception_handler(StarletteHTTPException)
async def add_bid_method_not_allowed(request: Request, exc: StarletteHTTPException):
    """JSON 405 with `Allow: POST` for any other method on the bid endpoint."""
    if exc.status_code == 405 and request.url.path == ADD_BID_PATH:
        response = message_response(405, f"Method {request.method} Not Allowed")
        response.headers["Allow"] = "POST"
        return response
    return await http_exception_handler(request, exc)


@app.get("/auctions")
def list_auctions(status: Optional[str] = None, limit: int = 20, db: Database = Depends(get_db)):
    """List auctions, optionally by their current status"""
    auctions = [serialize_document(a) for a in get_documents(db, "auction")]
    for a in auctions:
        a["status"] = auction_status(a.get("start_time"), a.get("end_time"))
    if status:
        auctions = [a for a in auctions if a["status"] == status]
    return auctions[:limit]


@app.post("/auctions")
def create_auction(payload: CreateAuctionRequest, db: Database = Depends(get_db)):
    """Create a new auction"""
    data = Auction(
        title=payload.title,
        description=payload.description,
        image_url=payload.image_url,
        start_time=payload.start_time,
        end_time=payload.end_time,
        status=auction_status(payload.start_time, payload.end_time),
    )
    doc = create_document(db, "auction", data)
    logger.info("Created auction %s", doc["_id"])
    return {"id": str(doc["_id"])}


@app.get("/auctions/{auction_id}")
def get_auction(auction_id: str, db: Database = Depends(get_db)):
    doc = get_document(db, "auction", auction_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Auction not found")

    auction = serialize_document(doc)
    auction["status"] = auction_status(auction.get("start_time"), auction.get("end_time"))
    auction["bids"] = [serialize_document(b) for b in get_documents(db, "bid", {"auction": auction["id"]})]
    return auction


@app.get("/schema")
def get_schema_info():
    """Expose schema classes for tooling."""
    return {
        "auction": Auction.model_json_schema(),
        "bid": Bid.model_json_schema(),
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if config.DATABASE_URL else "Not Set",
        "database_name": config.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }

    try:
        db = get_client()[config.DATABASE_NAME]
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except DatabaseUnavailable:
        pass
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"Error: {str(e)[:50]}"

    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
