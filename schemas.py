"""
Database Schemas for the Auction App

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name by convention (e.g., Auction -> "auction").
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class Auction(BaseModel):
    """Auction that item listings ("bids") are attached to"""
    title: str = Field(..., description="Auction title")
    description: Optional[str] = Field(None, description="Auction description")
    image_url: Optional[str] = Field(None, description="Hero image for auction")
    start_time: Optional[datetime] = Field(None, description="When the auction starts")
    end_time: Optional[datetime] = Field(None, description="When the auction ends")
    status: str = Field("scheduled", description="scheduled | live | ended")


class Bid(BaseModel):
    """An item submitted for an auction. Not a monetary offer."""
    auction: str = Field(..., description="Auction ID")
    bidder: str = Field(..., description="Bidder ID")
    itemName: str = Field(..., min_length=1, description="Name of the item")
    itemDescription: str = Field(..., min_length=1, description="Description of the item")
    itemImage: Optional[str] = Field(None, description="Public path of the uploaded image, e.g. /uploads/<file>")
