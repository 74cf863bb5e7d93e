import os
import re
import time
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from http import HTTPStatus
from typing import List, Optional

import stripe
import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import FastAPI, HTTPException, Depends, Request, Response, Header, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import payments
from auth import verify_principal, verify_admin, is_admin
from config import get_settings, allowed_origins
from database import get_collection, create_document
from schemas import User, Lesson, Creator, Comment, Report, Role, AccessLevel, Visibility

logging.basicConfig(format="%(message)s", level=os.getenv("LOG_LEVEL", "INFO").upper())

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

PAGE_SIZE = 6
HOME_LIMIT = 6
TRAILING_DAYS = 7


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    database.init_db(settings.database_url, settings.database_name)
    logger.info("startup", port=settings.port, origins=settings.allowed_origins)
    yield
    database.close_db()
    logger.info("shutdown")


app = FastAPI(title="Digital Life Lessons API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration=round(time.time() - start, 4),
        )


# ---------- Error responses ----------

def _error(status_code: int, message, error=None):
    return JSONResponse(
        status_code=status_code,
        content={"message": message, "error": error if error is not None else HTTPStatus(status_code).phrase},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request", jsonable_encoder(exc.errors()))


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.warning("database_error", path=request.url.path, error=str(exc)[:200])
    return _error(400, "Database operation failed", str(exc))


@app.exception_handler(ConnectionFailure)
async def database_unreachable_handler(request: Request, exc: ConnectionFailure):
    logger.error("database_unreachable", path=request.url.path, error=str(exc)[:200])
    return _error(500, "Database unavailable", type(exc).__name__)


@app.exception_handler(stripe.StripeError)
async def stripe_error_handler(request: Request, exc: stripe.StripeError):
    logger.error("stripe_error", path=request.url.path, error=str(exc)[:200])
    return _error(500, "Payment gateway error", exc.user_message or str(exc))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return _error(500, "Internal server error", type(exc).__name__)


@app.get("/", response_class=PlainTextResponse)
def read_root():
    return "Digital Life Lessons server is running"


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    else:
        response["database"] = "⚠️ Available but not initialized"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# ---------- Utilities ----------

def _now():
    return datetime.now(timezone.utc)


def _today_start():
    return _now().replace(hour=0, minute=0, second=0, microsecond=0)


def _to_oid(value: str):
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return value


def _sanitize(doc: dict):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _updates(payload: BaseModel) -> dict:
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    return updates


def _find_lesson(lesson_id: str) -> dict:
    lesson = get_collection("lessons").find_one({"_id": _to_oid(lesson_id)})
    if not lesson:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return lesson


def _require_owner_or_admin(lesson: dict, email: str):
    owner = (lesson.get("creator") or {}).get("email")
    if owner != email and not is_admin(email):
        raise HTTPException(status_code=403, detail="Only the author or an admin can change this lesson")


def _reported_lesson_ids() -> List[str]:
    return get_collection("reports").distinct("lessonId")


def _contributors_pipeline(limit: Optional[int] = None):
    pipeline = [
        {"$sort": {"createdAt": -1}},
        {"$group": {
            "_id": "$creator.email",
            "name": {"$first": "$creator.name"},
            "photoURL": {"$first": "$creator.photoURL"},
            "lessonCount": {"$sum": 1},
        }},
        {"$sort": {"lessonCount": -1, "_id": 1}},
    ]
    if limit:
        pipeline.append({"$limit": limit})
    return pipeline


def _contributors(limit: Optional[int] = None):
    rows = get_collection("lessons").aggregate(_contributors_pipeline(limit))
    return [
        {"email": r["_id"], "name": r.get("name"), "photoURL": r.get("photoURL"), "lessonCount": r["lessonCount"]}
        for r in rows
    ]


# ---------- Lessons ----------

class CreatorInfo(BaseModel):
    name: Optional[str] = None
    photoURL: Optional[str] = None


class LessonCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    image: Optional[str] = None
    category: str = Field(..., min_length=1)
    emotionalTone: Optional[str] = None
    accessLevel: AccessLevel = "free"
    visibility: Visibility = "public"
    creator: Optional[CreatorInfo] = None


class LessonUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    emotionalTone: Optional[str] = None
    accessLevel: Optional[AccessLevel] = None
    visibility: Optional[Visibility] = None


class FeaturedUpdate(BaseModel):
    featured: bool


class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1)
    name: Optional[str] = None
    photoURL: Optional[str] = None


class ReportCreate(BaseModel):
    reason: str = Field(..., min_length=1)


@app.post("/lessons", status_code=201)
def create_lesson(payload: LessonCreate, email: str = Depends(verify_principal)):
    author = get_collection("users").find_one({"email": email}) or {}
    info = payload.creator or CreatorInfo()
    lesson = Lesson(
        **payload.model_dump(exclude={"creator"}),
        creator=Creator(
            email=email,
            name=info.name or author.get("name"),
            photoURL=info.photoURL or author.get("photoURL"),
        ),
        createdAt=_now(),
    )
    lesson_id = create_document("lessons", lesson)
    logger.info("lesson_created", lesson_id=lesson_id, email=email)
    return {"ok": True, "insertedId": lesson_id}


@app.get("/public-lessons")
def list_public_lessons(
    category: Optional[str] = None,
    emotionalTone: Optional[str] = None,
    visibility: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=100),
):
    if visibility and visibility != "public":
        return {"ok": True, "total": 0, "result": []}
    query = {"visibility": "public"}
    if category:
        query["category"] = category
    if emotionalTone:
        query["emotionalTone"] = emotionalTone
    if search:
        query["title"] = {"$regex": re.escape(search), "$options": "i"}

    lessons = get_collection("lessons")
    total = lessons.count_documents(query)
    items = lessons.find(query).sort("createdAt", -1).skip(skip).limit(limit)
    return {"ok": True, "total": total, "result": [_sanitize(l) for l in items]}


@app.get("/lessons")
def list_lessons(
    email: Optional[str] = None,
    visibility: Optional[str] = None,
    emotionalTone: Optional[str] = None,
    category: Optional[str] = None,
    favorites: bool = False,
    reports: bool = False,
    caller: str = Depends(verify_principal),
):
    query = {}
    if email:
        query["creator.email"] = email
    if visibility:
        query["visibility"] = visibility
    if emotionalTone:
        query["emotionalTone"] = emotionalTone
    if category:
        query["category"] = category
    if favorites:
        query["favorites"] = caller
    if reports:
        query["_id"] = {"$in": [_to_oid(i) for i in _reported_lesson_ids()]}

    items = get_collection("lessons").find(query).sort("createdAt", -1)
    return {"ok": True, "result": [_sanitize(l) for l in items]}


@app.get("/lessons/featured")
def featured_lessons():
    items = get_collection("lessons").find({"featured": True}).sort("createdAt", -1).limit(HOME_LIMIT)
    return {"ok": True, "result": [_sanitize(l) for l in items]}


@app.get("/lessons/most-favorites")
def most_favorited_lessons():
    pipeline = [
        {"$match": {"visibility": "public"}},
        {"$addFields": {"favoritesCount": {"$size": {"$ifNull": ["$favorites", []]}}}},
        {"$sort": {"favoritesCount": -1, "createdAt": -1}},
        {"$limit": HOME_LIMIT},
    ]
    items = get_collection("lessons").aggregate(pipeline)
    return {"ok": True, "result": [_sanitize(l) for l in items]}


@app.get("/users/top-contributors")
def top_contributors():
    return {"ok": True, "result": _contributors(HOME_LIMIT)}


@app.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, email: str = Depends(verify_principal)):
    return {"ok": True, "lesson": _sanitize(_find_lesson(lesson_id))}


@app.patch("/lessons/{lesson_id}/featured")
def set_featured(lesson_id: str, payload: FeaturedUpdate, admin: str = Depends(verify_admin)):
    updated = get_collection("lessons").find_one_and_update(
        {"_id": _to_oid(lesson_id)},
        {"$set": {"featured": payload.featured}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return {"ok": True, "lesson": _sanitize(updated)}


def _toggle_member(lesson_id: str, field: str, email: str):
    lessons = get_collection("lessons")
    oid = _to_oid(lesson_id)
    projection = {field: 1}

    # Each step only matches when the email is (or is not) already present.
    removed = lessons.find_one_and_update(
        {"_id": oid, field: email},
        {"$pull": {field: email}},
        projection=projection,
        return_document=ReturnDocument.AFTER,
    )
    if removed is not None:
        return False, len(removed.get(field, []))

    added = lessons.find_one_and_update(
        {"_id": oid, field: {"$ne": email}},
        {"$addToSet": {field: email}},
        projection=projection,
        return_document=ReturnDocument.AFTER,
    )
    if added is not None:
        return True, len(added.get(field, []))

    if lessons.find_one({"_id": oid}, {"_id": 1}) is None:
        raise HTTPException(status_code=404, detail="Lesson not found")
    raise HTTPException(status_code=409, detail="Lesson changed concurrently, try again")


@app.patch("/lesson/{lesson_id}/likes")
def toggle_like(lesson_id: str, email: str = Depends(verify_principal)):
    liked, count = _toggle_member(lesson_id, "likes", email)
    return {"ok": True, "liked": liked, "likesCount": count}


@app.patch("/lesson/{lesson_id}/favorites")
def toggle_favorite(lesson_id: str, email: str = Depends(verify_principal)):
    favorited, count = _toggle_member(lesson_id, "favorites", email)
    return {"ok": True, "favorited": favorited, "favoritesCount": count}


@app.patch("/lesson/{lesson_id}/comments")
def add_comment(lesson_id: str, payload: CommentCreate, email: str = Depends(verify_principal)):
    author = get_collection("users").find_one({"email": email}) or {}
    comment = Comment(
        email=email,
        name=payload.name or author.get("name"),
        photoURL=payload.photoURL or author.get("photoURL"),
        comment=payload.comment,
        createdAt=_now(),
    )
    result = get_collection("lessons").update_one(
        {"_id": _to_oid(lesson_id)},
        {"$push": {"comments": comment.model_dump()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return {"ok": True, "comment": comment.model_dump()}


@app.patch("/report/{lesson_id}")
def report_lesson(lesson_id: str, payload: ReportCreate, email: str = Depends(verify_principal)):
    lesson = _find_lesson(lesson_id)
    report = Report(lessonId=str(lesson["_id"]), reporterEmail=email, reason=payload.reason, createdAt=_now())
    report_id = create_document("reports", report)
    logger.info("report_added", lesson_id=report.lessonId, email=email)
    return {"ok": True, "reportId": report_id}


@app.patch("/lessons/{lesson_id}")
def update_lesson(lesson_id: str, payload: LessonUpdate, email: str = Depends(verify_principal)):
    lesson = _find_lesson(lesson_id)
    _require_owner_or_admin(lesson, email)
    updates = _updates(payload)
    updates["updatedAt"] = _now()
    updated = get_collection("lessons").find_one_and_update(
        {"_id": lesson["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    return {"ok": True, "lesson": _sanitize(updated)}


@app.delete("/lessons/{lesson_id}")
def delete_lesson(lesson_id: str, email: str = Depends(verify_principal)):
    lesson = _find_lesson(lesson_id)
    _require_owner_or_admin(lesson, email)
    get_collection("lessons").delete_one({"_id": lesson["_id"]})
    get_collection("reports").delete_many({"lessonId": str(lesson["_id"])})
    logger.info("lesson_deleted", lesson_id=str(lesson["_id"]), email=email)
    return {"ok": True, "deletedId": str(lesson["_id"])}


# ---------- Admin & Analytics ----------

@app.get("/admin/overview")
def admin_overview(admin: str = Depends(verify_admin)):
    lessons = get_collection("lessons")
    today = _today_start()
    since = today - timedelta(days=TRAILING_DAYS - 1)

    per_day = Counter(
        doc["createdAt"].date().isoformat()
        for doc in lessons.find({"createdAt": {"$gte": since}}, {"createdAt": 1})
    )
    days = [(since + timedelta(days=i)).date().isoformat() for i in range(TRAILING_DAYS)]

    return {
        "ok": True,
        "totalUsers": get_collection("users").count_documents({}),
        "totalPublicLessons": lessons.count_documents({"visibility": "public"}),
        "totalReportedLessons": len(_reported_lesson_ids()),
        "todayLessons": lessons.count_documents({"createdAt": {"$gte": today}}),
        "lessonsPerDay": [{"date": d, "count": per_day.get(d, 0)} for d in days],
        "contributors": _contributors(),
    }


@app.get("/admin/reports")
def reported_lessons(admin: str = Depends(verify_admin)):
    grouped = {}
    for r in get_collection("reports").find().sort("createdAt", 1):
        entry = grouped.setdefault(r["lessonId"], {"lessonId": r["lessonId"], "count": 0, "reports": []})
        entry["count"] += 1
        entry["reports"].append({"reporterEmail": r["reporterEmail"], "reason": r["reason"], "createdAt": r.get("createdAt")})

    titles = {
        str(l["_id"]): l.get("title")
        for l in get_collection("lessons").find({"_id": {"$in": [_to_oid(i) for i in grouped]}}, {"title": 1})
    }
    result = sorted(grouped.values(), key=lambda e: e["count"], reverse=True)
    for entry in result:
        entry["title"] = titles.get(entry["lessonId"])
    return {"ok": True, "result": result}


@app.delete("/admin/reports/{lesson_id}")
def dismiss_reports(lesson_id: str, admin: str = Depends(verify_admin)):
    result = get_collection("reports").delete_many({"lessonId": lesson_id})
    return {"ok": True, "deletedCount": result.deleted_count}


@app.get("/analytics/accessLevel")
def access_level_analytics():
    since = _now() - timedelta(days=TRAILING_DAYS)
    counts = Counter(
        doc.get("accessLevel")
        for doc in get_collection("lessons").find(
            {"visibility": "public", "createdAt": {"$gte": since}}, {"accessLevel": 1}
        )
    )
    return {"ok": True, "free": counts.get("free", 0), "premium": counts.get("premium", 0)}


# ---------- Users ----------

class UpsertUser(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    photoURL: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    photoURL: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role


class AdminUserUpdate(BaseModel):
    name: Optional[str] = None
    photoURL: Optional[str] = None
    role: Optional[Role] = None
    isPremium: Optional[bool] = None


@app.post("/users", status_code=201)
def register_user(payload: UpsertUser, response: Response):
    users = get_collection("users")
    user = User(email=payload.email, name=payload.name, photoURL=payload.photoURL, create_at=_now())
    try:
        result = users.update_one(
            {"email": payload.email},
            {"$setOnInsert": user.model_dump(exclude={"email"})},
            upsert=True,
        )
        created = result.upserted_id is not None
    except DuplicateKeyError:
        # a concurrent registration inserted the same email first
        created = False
    stored = users.find_one({"email": payload.email})
    if not created:
        response.status_code = 200
        return {"ok": True, "message": "User already exists", "user": _sanitize(stored)}
    logger.info("user_registered", email=payload.email)
    return {"ok": True, "message": "User created", "user": _sanitize(stored)}


@app.get("/users")
def list_users(email: str = Depends(verify_principal)):
    users = get_collection("users").find({"email": {"$ne": email}}).sort("create_at", -1)
    return {"ok": True, "result": [_sanitize(u) for u in users]}


@app.get("/users/{email}/role")
def get_user_role(email: str):
    user = get_collection("users").find_one({"email": email}) or {}
    return {"role": user.get("role", "user"), "isPremium": bool(user.get("isPremium", False))}


@app.patch("/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate, admin: str = Depends(verify_admin)):
    result = get_collection("users").update_one({"_id": _to_oid(user_id)}, {"$set": {"role": payload.role}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user_role_updated", user_id=user_id, role=payload.role, by=admin)
    return {"ok": True, "role": payload.role}


@app.patch("/users")
def update_profile(payload: ProfileUpdate, email: str = Depends(verify_principal)):
    updated = get_collection("users").find_one_and_update(
        {"email": email},
        {"$set": _updates(payload)},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True, "user": _sanitize(updated)}


@app.patch("/user/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdate, admin: str = Depends(verify_admin)):
    updated = get_collection("users").find_one_and_update(
        {"_id": _to_oid(user_id)},
        {"$set": _updates(payload)},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True, "user": _sanitize(updated)}


# ---------- Payments ----------

class SessionStatusRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


@app.post("/create-checkout-session")
def create_checkout_session(email: str = Depends(verify_principal)):
    session = payments.create_checkout_session(email)
    return {"url": session["url"]}


@app.patch("/session-status")
def session_status(payload: SessionStatusRequest):
    session = payments.retrieve_session(payload.sessionId)
    status = payments.reconcile_session(get_collection("users"), session)
    return {
        "ok": status in (payments.GRANTED, payments.ALREADY_PROCESSED),
        "status": status,
        "paymentStatus": session["payment_status"],
        "transactionId": session["id"],
    }


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    secret = get_settings().stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=503, detail="Webhook not configured")
    payload = await request.body()
    try:
        event = payments.construct_event(payload, stripe_signature or "", secret)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    status = None
    if event["type"] in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        status = await run_in_threadpool(payments.reconcile_session, get_collection("users"), event["data"]["object"])
    logger.info("webhook_received", type=event["type"], status=status)
    return {"received": True, "status": status}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
