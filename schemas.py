"""
Database Schemas for Digital Life Lessons

Each Pydantic model describes a document in one of the MongoDB collections:
User -> "users", Lesson -> "lessons", Report -> "reports".
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["user", "admin"]
AccessLevel = Literal["free", "premium"]
Visibility = Literal["public", "private"]


class User(BaseModel):
    """Registered account, keyed by email"""
    email: EmailStr = Field(..., description="Unique email address")
    name: Optional[str] = Field(None, description="Display name")
    photoURL: Optional[str] = Field(None, description="Profile photo URL")
    role: Role = Field("user", description="Permission role")
    isPremium: bool = Field(False, description="Whether lifetime premium was purchased")
    transactionId: Optional[str] = Field(None, description="Checkout session that granted premium")
    create_at: datetime = Field(..., description="Registration time")


class Creator(BaseModel):
    """Author info denormalized onto each lesson"""
    email: EmailStr
    name: Optional[str] = None
    photoURL: Optional[str] = None


class Comment(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    photoURL: Optional[str] = None
    comment: str
    createdAt: datetime


class Lesson(BaseModel):
    """A short life lesson written by a user"""
    title: str = Field(..., description="Lesson title")
    description: str = Field("", description="Lesson body")
    image: Optional[str] = Field(None, description="Cover image URL")
    category: str = Field(..., description="Category like Career, Relationships, Mindset")
    emotionalTone: Optional[str] = Field(None, description="Motivational, Sad, Realization, Gratitude...")
    accessLevel: AccessLevel = Field("free", description="Who may read the full lesson")
    visibility: Visibility = Field("public", description="Whether it shows in public listings")
    creator: Creator
    createdAt: datetime
    featured: bool = False
    likes: List[str] = Field(default_factory=list, description="Emails of users who liked it")
    favorites: List[str] = Field(default_factory=list, description="Emails of users who saved it")
    comments: List[Comment] = Field(default_factory=list, description="Append-only, oldest first")


class Report(BaseModel):
    """A user's report against a lesson"""
    lessonId: str = Field(..., description="Reported lesson id")
    reporterEmail: EmailStr
    reason: str
    createdAt: datetime
