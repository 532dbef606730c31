"""
Zephsole Studio
Backend API Server
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field

from zephsole import admin as admin_ops
from zephsole import auth
from zephsole.config import ALLOWED_ORIGINS, FAL_MAINTENANCE_AUTOSTART, GenerationStatus, WorkshopRole
from zephsole.credits import (
    CREDIT_COSTS, CREDIT_PURCHASE_OPTIONS, PRICING_PLANS, get_available_credits, list_redemptions, redeem_credits,
)
from zephsole.database import db_conn, init_db, log_event, new_id, now_ms
from zephsole.fal_health import get_fal_health_overview, run_fal_maintenance
from zephsole.fal_keys import (
    add_fal_key, list_fal_keys_for_admin, probe_fal_key, remove_fal_key, resolve_key_to_test,
    seed_fal_keys_from_env_if_empty, set_fal_key_enabled, update_fal_key,
)
from zephsole.fal_manager import NoActiveFalKeys
from zephsole.generation import generate_image_with_fal, generate_three_d_with_fal, generate_video_with_fal
from zephsole.image_generations import (
    get_generation_by_tool_call_id, get_generation_by_workflow_id, get_generations_by_project, upsert_generation,
)
from zephsole.intelligence import clear_history, get_messages, send_message
from zephsole.key_load import get_all_key_loads, get_load_statistics
from zephsole.logger import get_logger
from zephsole.materials import add_material, get_materials
from zephsole.media import list_project_media, save_media_record
from zephsole.personas import AGENT_PERSONAS, get_persona
from zephsole import products
from zephsole import projects
from zephsole import referrals
from zephsole.redis_client import redis_client
from zephsole.scheduler import ensure_fal_crons, list_fal_crons, remove_fal_cron, scheduler
from zephsole.site_assets import delete_asset, invalidate_assets, list_assets_cached, save_asset
from zephsole import studio
from zephsole.units import CONVERSION_RATES, SIZE_RUNS, UNIT_SYSTEMS, WIDTH_PROFILES
from zephsole import workshops

logger = get_logger(__name__)

MANAGER_ROLES = (WorkshopRole.OWNER, WorkshopRole.ADMIN)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    await redis_client.connect()
    if FAL_MAINTENANCE_AUTOSTART:
        ensure_fal_crons()
    log_event("info", "server_start", "Zephsole API started")

    yield

    scheduler.shutdown()
    await redis_client.disconnect()
    log_event("info", "server_stop", "Zephsole API stopped")

# =============================================================================
# FastAPI App
# =============================================================================
app = FastAPI(
    title="Zephsole Studio API",
    description="Footwear design studio backend",
    version="1.0.0",
    lifespan=lifespan
)

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# =============================================================================
# Pydantic Models
# =============================================================================
class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=6)
    name: Optional[str] = None
    referral_code: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class WorkshopCreate(BaseModel):
    name: str = Field(..., min_length=1)

class InviteMember(BaseModel):
    email: str
    role: str = WorkshopRole.MEMBER

class RedeemRequest(BaseModel):
    amount: float
    project_id: Optional[str] = None
    asset_type: Optional[str] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = None

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)

class ProjectRename(BaseModel):
    name: str = Field(..., min_length=1)

class ProjectClassification(BaseModel):
    classification_id: Optional[str] = None

class ProjectMode(BaseModel):
    mode: str

class ProjectUnitSystem(BaseModel):
    unit_system: str

class ClassificationCreate(BaseModel):
    name: str = Field(..., min_length=1)
    color: Optional[str] = None

class ClassificationRename(BaseModel):
    name: str = Field(..., min_length=1)

class SizeRun(BaseModel):
    system: str
    sizes: List[float]
    widths: List[str]

class BaselineUpdate(BaseModel):
    size_run: SizeRun
    last_shape: Optional[str] = None
    heel_height: Optional[float] = None
    toe_spring: Optional[float] = None

class UpperPanel(BaseModel):
    name: str
    material_id: Optional[str] = None
    area: Optional[float] = None

class UpperDesignUpdate(BaseModel):
    panels: List[UpperPanel]
    stitching: Optional[str] = None
    closures: Optional[List[str]] = None
    lining: Optional[str] = None

class SoleDesignUpdate(BaseModel):
    outsole_material_id: Optional[str] = None
    midsole_material_id: Optional[str] = None
    tread_pattern: Optional[str] = None
    midsole_stack: Optional[float] = None
    shank: Optional[str] = None
    plate: Optional[str] = None

class CanvasItemCreate(BaseModel):
    type: str
    data: Any = None
    x: float
    y: float
    scale: Optional[float] = None

class CanvasItemMove(BaseModel):
    x: float
    y: float

class VersionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    snapshot: Any = None

class ColorSwatch(BaseModel):
    name: str
    hex: str
    usage: Optional[str] = None

class DesignContextUpdate(BaseModel):
    footwear_type: Optional[str] = None
    gender: Optional[str] = None
    aesthetic_vibe: Optional[str] = None
    target_audience: Optional[str] = None
    color_palette: Optional[List[ColorSwatch]] = None
    key_materials: Optional[List[str]] = None
    performance_specs: Optional[List[str]] = None
    summary: Optional[str] = None

class BomItem(BaseModel):
    part_name: str
    part_category: str
    material_name: str
    material_grade: Optional[str] = None
    color: Optional[str] = None
    quantity: float
    unit: str
    supplier: Optional[str] = None
    estimated_cost: Optional[float] = None

class BomUpdate(BaseModel):
    items: List[BomItem]
    total_estimated_cost: Optional[float] = None
    currency: str

class MaterialCreate(BaseModel):
    name: str
    supplier: Optional[str] = None
    unit: str
    price_per_unit: float
    currency: str
    co2_per_unit: Optional[float] = None
    properties: Optional[Dict[str, Any]] = None
    availability: bool

class MediaRecordCreate(BaseModel):
    object_key: str
    file_name: str
    content_type: str
    size: Optional[int] = None
    kind: Optional[str] = None

class Attachment(BaseModel):
    media_id: Optional[str] = None
    url: str
    file_name: str
    content_type: str
    size: Optional[int] = None

class MessageCreate(BaseModel):
    role: str
    content: str
    type: Optional[str] = None
    card_data: Any = None
    message_id: Optional[str] = None
    attachments: Optional[List[Attachment]] = None

class SiteAssetCreate(BaseModel):
    type: str
    object_key: str
    url: str
    file_name: str
    content_type: str
    size: Optional[int] = None

class ImageGenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    aspect_ratio: Optional[str] = None
    reference_image_urls: Optional[List[str]] = None
    tool_call_id: Optional[str] = None
    workflow_id: Optional[str] = None
    source: Optional[str] = None

class VideoGenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    reference_image_url: Optional[str] = None
    aspect_ratio: Optional[str] = None

class ThreeDGenerateRequest(BaseModel):
    reference_image_url: str
    prompt: Optional[str] = None

class ReferralRegister(BaseModel):
    referral_code: str

class PreferredWorkshop(BaseModel):
    workshop_id: str

class PurchaseReward(BaseModel):
    user_id: str
    purchase_amount: float

class AdminGrantCredits(BaseModel):
    amount: float
    source: Optional[str] = None
    description: Optional[str] = None
    expires_in_days: Optional[float] = None

class AdminCreateUser(BaseModel):
    email: str
    name: Optional[str] = None
    mark_email_verified: bool = False

class AdminCreateWorkshop(BaseModel):
    owner_email: str
    workspace_name: str = Field(..., min_length=1)
    initial_credits: Optional[float] = None

class AdminAddMember(BaseModel):
    user_email: str
    role: str

class AdminSetRole(BaseModel):
    user_email: str
    role: str

class FalKeyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)
    capacity: Optional[int] = None
    weight: Optional[int] = None
    enabled: Optional[bool] = None

class FalKeyUpdate(BaseModel):
    name: Optional[str] = None
    key: Optional[str] = None
    capacity: Optional[int] = None
    weight: Optional[int] = None
    enabled: Optional[bool] = None

class FalKeyEnabled(BaseModel):
    enabled: bool

class FalKeyTest(BaseModel):
    key_id: Optional[str] = None

class FalMaintenanceRequest(BaseModel):
    stale_after_ms: Optional[int] = None
    note: Optional[str] = None

# =============================================================================
# Access Helpers
# =============================================================================
def _project_for_member(con, project_id: str, user: Dict) -> Dict:
    project = projects.require_project(con, project_id)
    workshops.require_workshop_member(con, project["workshop_id"], user["id"])
    return project

def _classification_for_member(con, classification_id: str, user: Dict) -> Dict:
    classification = projects.get_classification(con, classification_id)
    if not classification:
        raise HTTPException(404, "Classification not found")
    workshops.require_workshop_member(con, classification["workshop_id"], user["id"])
    return classification

def _canvas_item_for_member(con, item_id: str, user: Dict) -> Dict:
    row = con.execute("SELECT project_id FROM canvas_items WHERE id = ?", (item_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Canvas item not found")
    return _project_for_member(con, row["project_id"], user)

def _generation_for_member(con, generation: Dict, user: Dict) -> Dict:
    if not generation.get("project_id"):
        raise HTTPException(404, "Generation not found")
    return _project_for_member(con, generation["project_id"], user)

# =============================================================================
# Health Check
# =============================================================================
@app.get("/api/health")
async def health():
    return {"ok": True, "service": "Zephsole", "timestamp": now_ms()}

# =============================================================================
# Auth Endpoints
# =============================================================================
@app.post("/api/auth/register")
async def register(body: RegisterRequest):
    con = db_conn()
    try:
        user = auth.create_user(con, body.email, name=body.name, password=body.password)
        session = auth.login(con, body.email, body.password)
        workshop_id = workshops.ensure_personal_workshop(con, user["id"], user["name"])

        referral = None
        if body.referral_code and body.referral_code.strip():
            referral = referrals.register_referral(con, user["id"], body.referral_code.strip())

        log_event("info", "user_register", f"User registered: {user['email']}", user_id=user["id"])
        user = auth.get_user(con, user["id"])
        return {
            "ok": True,
            "token": session["auth_token"],
            "user": auth.public_user(user),
            "workshop_id": workshop_id,
            "referral": referral,
        }
    finally:
        con.close()

@app.post("/api/auth/login")
async def login(body: LoginRequest):
    con = db_conn()
    try:
        user = auth.login(con, body.email, body.password)
        log_event("info", "user_login", f"User logged in: {user['email']}", user_id=user["id"])
        return {"ok": True, "token": user["auth_token"], "user": auth.public_user(user)}
    finally:
        con.close()

@app.post("/api/auth/logout")
async def logout(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        auth.logout(con, user["id"])
        return {"ok": True}
    finally:
        con.close()

@app.get("/api/me")
async def get_me(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        return {
            "ok": True,
            "user": auth.public_user(user),
            "workshops": workshops.get_workshops(con, user["id"]),
        }
    finally:
        con.close()

# =============================================================================
# Workshops
# =============================================================================
@app.get("/api/workshops")
async def list_workshops(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        return {"ok": True, "workshops": workshops.get_workshops(con, user["id"])}
    finally:
        con.close()

@app.post("/api/workshops")
async def create_workshop(
    body: WorkshopCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshop_id = workshops.create_workshop(con, body.name, user["id"])
        return {"ok": True, "workshop": workshops.get_workshop(con, workshop_id)}
    finally:
        con.close()

@app.post("/api/workshops/personal")
async def ensure_personal_workshop(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshop_id = workshops.ensure_personal_workshop(con, user["id"], user["name"])
        return {"ok": True, "workshop_id": workshop_id}
    finally:
        con.close()

@app.get("/api/workshops/by-slug/{slug}")
async def get_workshop_by_slug(
    slug: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshop = workshops.get_workshop_by_slug(con, slug)
        if not workshop:
            raise HTTPException(404, "WORKSHOP_NOT_FOUND")
        membership = workshops.require_workshop_member(con, workshop["id"], user["id"])
        return {"ok": True, "workshop": workshop, "role": membership["role"]}
    finally:
        con.close()

@app.get("/api/workshops/{workshop_id}/members")
async def get_workshop_members(
    workshop_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        return {"ok": True, "members": workshops.get_members(con, workshop_id)}
    finally:
        con.close()

@app.post("/api/workshops/{workshop_id}/members")
async def invite_workshop_member(
    workshop_id: str,
    body: InviteMember,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_role(con, workshop_id, user["id"], MANAGER_ROLES)
        membership_id = workshops.invite_member(con, workshop_id, body.email, body.role)
        log_event("info", "member_invited", f"{body.email} invited as {body.role}", user_id=user["id"],
                  meta={"workshop_id": workshop_id})
        return {"ok": True, "membership_id": membership_id}
    finally:
        con.close()

# =============================================================================
# Credits
# =============================================================================
@app.get("/api/pricing")
async def get_pricing():
    return {
        "ok": True,
        "credit_costs": CREDIT_COSTS,
        "plans": PRICING_PLANS,
        "purchase_options": CREDIT_PURCHASE_OPTIONS,
    }

@app.get("/api/workshops/{workshop_id}/credits")
async def get_workshop_credits(
    workshop_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        return {"ok": True, **get_available_credits(con, workshop_id)}
    finally:
        con.close()

@app.get("/api/workshops/{workshop_id}/redemptions")
async def get_workshop_redemptions(
    workshop_id: str,
    limit: int = Query(50, ge=1, le=200),
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        return {"ok": True, "redemptions": list_redemptions(con, workshop_id, limit)}
    finally:
        con.close()

@app.post("/api/workshops/{workshop_id}/credits/redeem")
async def redeem_workshop_credits(
    workshop_id: str,
    body: RedeemRequest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        redemption_id = redeem_credits(
            con, workshop_id, body.amount,
            project_id=body.project_id,
            user_id=user["id"],
            asset_type=body.asset_type,
            description=body.description,
            idempotency_key=body.idempotency_key,
        )
        return {"ok": True, "redemption_id": redemption_id}
    finally:
        con.close()

# =============================================================================
# Projects & Classifications
# =============================================================================
@app.get("/api/workshops/{workshop_id}/projects")
async def list_projects(
    workshop_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        return {"ok": True, "projects": projects.get_projects(con, workshop_id)}
    finally:
        con.close()

@app.post("/api/workshops/{workshop_id}/projects")
async def create_project(
    workshop_id: str,
    body: ProjectCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        created = projects.create_project(con, body.name, workshop_id, user["id"])
        return {"ok": True, **created}
    finally:
        con.close()

@app.get("/api/workshops/by-slug/{workshop_slug}/projects/{project_slug}")
async def get_project_by_slug(
    workshop_slug: str,
    project_slug: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        project = projects.get_project_by_slug(con, workshop_slug, project_slug)
        if not project:
            raise HTTPException(404, "Project not found")
        workshops.require_workshop_member(con, project["workshop_id"], user["id"])
        return {"ok": True, "project": project}
    finally:
        con.close()

@app.patch("/api/projects/{project_id}")
async def rename_project(
    project_id: str,
    body: ProjectRename,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        projects.rename_project(con, project_id, body.name.strip())
        return {"ok": True}
    finally:
        con.close()

@app.delete("/api/projects/{project_id}")
async def delete_project(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        project = _project_for_member(con, project_id, user)
        projects.delete_project(con, project_id)
        log_event("info", "project_deleted", f"Project {project['slug']} deleted", user_id=user["id"])
        return {"ok": True}
    finally:
        con.close()

@app.post("/api/projects/{project_id}/pin")
async def toggle_pin_project(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "is_pinned": projects.toggle_pin_project(con, project_id)}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/classification")
async def update_project_classification(
    project_id: str,
    body: ProjectClassification,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        project = _project_for_member(con, project_id, user)
        if body.classification_id:
            classification = projects.get_classification(con, body.classification_id)
            if not classification or classification["workshop_id"] != project["workshop_id"]:
                raise HTTPException(404, "Classification not found")
        projects.update_project_classification(con, project_id, body.classification_id)
        return {"ok": True}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/mode")
async def update_project_mode(
    project_id: str,
    body: ProjectMode,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        projects.update_project_mode(con, project_id, body.mode)
        return {"ok": True}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/unit-system")
async def update_project_unit_system(
    project_id: str,
    body: ProjectUnitSystem,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        projects.update_project_unit_system(con, project_id, body.unit_system)
        return {"ok": True}
    finally:
        con.close()

@app.get("/api/workshops/{workshop_id}/classifications")
async def list_classifications(
    workshop_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        return {"ok": True, "classifications": projects.get_classifications(con, workshop_id)}
    finally:
        con.close()

@app.post("/api/workshops/{workshop_id}/classifications")
async def create_classification(
    workshop_id: str,
    body: ClassificationCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        workshops.require_workshop_member(con, workshop_id, user["id"])
        classification_id = projects.create_classification(con, workshop_id, body.name, body.color)
        return {"ok": True, "id": classification_id}
    finally:
        con.close()

@app.patch("/api/classifications/{classification_id}")
async def rename_classification(
    classification_id: str,
    body: ClassificationRename,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _classification_for_member(con, classification_id, user)
        projects.rename_classification(con, classification_id, body.name)
        return {"ok": True}
    finally:
        con.close()

@app.delete("/api/classifications/{classification_id}")
async def delete_classification(
    classification_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _classification_for_member(con, classification_id, user)
        projects.delete_classification(con, classification_id)
        return {"ok": True}
    finally:
        con.close()

# =============================================================================
# Product Specs
# =============================================================================
@app.get("/api/projects/{project_id}/product")
async def get_product_specs(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {
            "ok": True,
            "baseline": products.get_baseline(con, project_id),
            "upper": products.get_upper_design(con, project_id),
            "sole": products.get_sole_design(con, project_id),
        }
    finally:
        con.close()

@app.put("/api/projects/{project_id}/product/baseline")
async def update_baseline(
    project_id: str,
    body: BaselineUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        products.update_baseline(con, project_id, body.size_run.model_dump(), body.last_shape,
                                 body.heel_height, body.toe_spring)
        return {"ok": True}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/product/upper")
async def update_upper_design(
    project_id: str,
    body: UpperDesignUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        products.update_upper_design(con, project_id, [p.model_dump() for p in body.panels],
                                     body.stitching, body.closures, body.lining)
        return {"ok": True}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/product/sole")
async def update_sole_design(
    project_id: str,
    body: SoleDesignUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        products.update_sole_design(con, project_id, **body.model_dump())
        return {"ok": True}
    finally:
        con.close()

# =============================================================================
# Studio
# =============================================================================
@app.get("/api/projects/{project_id}/canvas")
async def get_canvas_items(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "items": studio.get_canvas_items(con, project_id)}
    finally:
        con.close()

@app.post("/api/projects/{project_id}/canvas")
async def add_canvas_item(
    project_id: str,
    body: CanvasItemCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        item_id = studio.add_canvas_item(con, project_id, body.type, body.data, body.x, body.y, body.scale)
        return {"ok": True, "id": item_id}
    finally:
        con.close()

@app.patch("/api/canvas/{item_id}")
async def move_canvas_item(
    item_id: str,
    body: CanvasItemMove,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _canvas_item_for_member(con, item_id, user)
        studio.update_canvas_item_position(con, item_id, body.x, body.y)
        return {"ok": True}
    finally:
        con.close()

@app.delete("/api/canvas/{item_id}")
async def delete_canvas_item(
    item_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _canvas_item_for_member(con, item_id, user)
        studio.delete_canvas_item(con, item_id)
        return {"ok": True}
    finally:
        con.close()

@app.get("/api/projects/{project_id}/versions")
async def get_versions(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "versions": studio.get_versions(con, project_id)}
    finally:
        con.close()

@app.post("/api/projects/{project_id}/versions")
async def save_version(
    project_id: str,
    body: VersionCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        version_id = studio.save_version(con, project_id, body.name, body.snapshot, body.description)
        return {"ok": True, "id": version_id}
    finally:
        con.close()

@app.get("/api/projects/{project_id}/design-context")
async def get_design_context(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "design_context": studio.get_design_context(con, project_id)}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/design-context")
async def update_design_context(
    project_id: str,
    body: DesignContextUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        context_id = studio.update_design_context(con, project_id, **body.model_dump(exclude_none=True))
        return {"ok": True, "id": context_id}
    finally:
        con.close()

@app.get("/api/projects/{project_id}/bom")
async def get_bom(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "bom": studio.get_bom(con, project_id)}
    finally:
        con.close()

@app.put("/api/projects/{project_id}/bom")
async def update_bom(
    project_id: str,
    body: BomUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        bom_id = studio.update_bom(con, project_id, [item.model_dump() for item in body.items], body.currency,
                                   body.total_estimated_cost)
        return {"ok": True, "id": bom_id}
    finally:
        con.close()

@app.get("/api/media/public")
async def get_public_media():
    con = db_conn()
    try:
        return {"ok": True, "media": studio.get_all_public_media(con)}
    finally:
        con.close()

# =============================================================================
# Materials & Media
# =============================================================================
@app.get("/api/materials")
async def list_materials():
    con = db_conn()
    try:
        return {"ok": True, "materials": get_materials(con)}
    finally:
        con.close()

@app.post("/api/admin/materials")
async def create_material(
    body: MaterialCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        material_id = add_material(con, **body.model_dump())
        return {"ok": True, "id": material_id}
    finally:
        con.close()

@app.get("/api/projects/{project_id}/media")
async def get_project_media(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "media": list_project_media(con, project_id)}
    finally:
        con.close()

@app.post("/api/projects/{project_id}/media")
async def create_media_record(
    project_id: str,
    body: MediaRecordCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        try:
            record = save_media_record(con, project_id, body.object_key, body.file_name, body.content_type,
                                       size=body.size, kind=body.kind, uploaded_by=user["id"])
        except RuntimeError as e:
            logger.error(f"Media storage misconfigured: {e}")
            raise HTTPException(500, str(e))
        return {"ok": True, **record}
    finally:
        con.close()

# =============================================================================
# Intelligence Threads
# =============================================================================
@app.get("/api/projects/{project_id}/messages")
async def list_messages(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "messages": get_messages(con, project_id)}
    finally:
        con.close()

@app.post("/api/projects/{project_id}/messages")
async def create_message(
    project_id: str,
    body: MessageCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        attachments = [a.model_dump() for a in body.attachments] if body.attachments is not None else None
        message_id = send_message(con, project_id, body.role, body.content, body.type, body.card_data,
                                  body.message_id, attachments)
        return {"ok": True, "id": message_id}
    finally:
        con.close()

@app.delete("/api/projects/{project_id}/messages")
async def delete_messages(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "deleted": clear_history(con, project_id)}
    finally:
        con.close()

@app.get("/api/personas")
async def list_personas():
    return {"ok": True, "personas": AGENT_PERSONAS}

@app.get("/api/personas/{agent_id}")
async def get_agent_persona(agent_id: str):
    return {"ok": True, "persona": get_persona(agent_id)}

@app.get("/api/units")
async def get_units():
    return {
        "ok": True,
        "unit_systems": list(UNIT_SYSTEMS),
        "conversion_rates": CONVERSION_RATES,
        "size_runs": SIZE_RUNS,
        "width_profiles": WIDTH_PROFILES,
    }

# =============================================================================
# Site Assets
# =============================================================================
@app.get("/api/site-assets/{asset_type}")
async def list_site_assets(asset_type: str):
    con = db_conn()
    try:
        return {"ok": True, "assets": await list_assets_cached(con, asset_type)}
    finally:
        con.close()

@app.post("/api/admin/site-assets")
async def create_site_asset(
    body: SiteAssetCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        asset_id = save_asset(con, body.type, body.object_key, body.url, body.file_name, body.content_type,
                              body.size)
    finally:
        con.close()
    await invalidate_assets(body.type)
    return {"ok": True, "id": asset_id}

@app.delete("/api/admin/site-assets/{asset_id}")
async def remove_site_asset(
    asset_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        asset_type = delete_asset(con, asset_id)
    finally:
        con.close()
    if asset_type:
        await invalidate_assets(asset_type)
    return {"ok": True}

# =============================================================================
# Generation
# =============================================================================
@app.post("/api/projects/{project_id}/generate/image")
async def generate_image(
    project_id: str,
    body: ImageGenerateRequest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    tool_call_id = body.tool_call_id or new_id()
    cost = CREDIT_COSTS["IMAGE_GENERATION_PRO"]

    con = db_conn()
    try:
        project = _project_for_member(con, project_id, user)
        workshop_id = project["workshop_id"]
        existing = get_generation_by_tool_call_id(con, tool_call_id)
        if existing and existing["project_id"] != project_id:
            raise HTTPException(409, "TOOL_CALL_ID_IN_USE")
        if get_available_credits(con, workshop_id)["balance"] < cost:
            raise HTTPException(402, "INSUFFICIENT_CREDITS")

        upsert_generation(con, tool_call_id, GenerationStatus.GENERATING, project_id=project_id, user_id=user["id"],
                          prompt=body.prompt, aspect_ratio=body.aspect_ratio, workflow_id=body.workflow_id,
                          source=body.source)

        try:
            result = await generate_image_with_fal(body.prompt, body.aspect_ratio, body.reference_image_urls)
        except ValueError as e:
            upsert_generation(con, tool_call_id, GenerationStatus.ERROR, error=str(e))
            raise HTTPException(400, str(e))
        except NoActiveFalKeys as e:
            upsert_generation(con, tool_call_id, GenerationStatus.ERROR, error=str(e))
            raise HTTPException(503, str(e))
        except Exception as e:
            logger.error(f"Image generation {tool_call_id} failed: {e}")
            upsert_generation(con, tool_call_id, GenerationStatus.ERROR, error=str(e)[:500])
            log_event("error", "generation_failed", str(e)[:500], user_id=user["id"],
                      meta={"tool_call_id": tool_call_id, "project_id": project_id})
            raise HTTPException(502, "Image generation failed")

        # Charge before the result is published
        try:
            redeem_credits(con, workshop_id, cost, project_id=project_id, user_id=user["id"], asset_type="image",
                           description=body.prompt[:120], idempotency_key=tool_call_id)
        except HTTPException as e:
            upsert_generation(con, tool_call_id, GenerationStatus.ERROR, model=result["model"],
                              error=str(e.detail))
            log_event("warning", "generation_unbilled", str(e.detail), user_id=user["id"],
                      meta={"tool_call_id": tool_call_id, "project_id": project_id})
            raise
        upsert_generation(con, tool_call_id, GenerationStatus.COMPLETED, url=result["url"], model=result["model"],
                          aspect_ratio=result["aspect_ratio"])

        return {
            "ok": True,
            "tool_call_id": tool_call_id,
            "generation": get_generation_by_tool_call_id(con, tool_call_id),
        }
    finally:
        con.close()

@app.post("/api/projects/{project_id}/generate/video")
async def generate_video(
    project_id: str,
    body: VideoGenerateRequest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
    finally:
        con.close()
    try:
        result = await generate_video_with_fal(body.prompt, body.reference_image_url, body.aspect_ratio)
    except NoActiveFalKeys as e:
        raise HTTPException(503, str(e))
    except Exception as e:
        logger.error(f"Video generation failed: {e}")
        raise HTTPException(502, "Video generation failed")
    return {"ok": True, **result}

@app.post("/api/projects/{project_id}/generate/three-d")
async def generate_three_d(
    project_id: str,
    body: ThreeDGenerateRequest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
    finally:
        con.close()
    try:
        result = await generate_three_d_with_fal(body.reference_image_url, body.prompt)
    except NoActiveFalKeys as e:
        raise HTTPException(503, str(e))
    except Exception as e:
        logger.error(f"3D generation failed: {e}")
        raise HTTPException(502, "3D generation failed")
    return {"ok": True, **result}

@app.get("/api/projects/{project_id}/generations")
async def list_generations(
    project_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        _project_for_member(con, project_id, user)
        return {"ok": True, "generations": get_generations_by_project(con, project_id)}
    finally:
        con.close()

@app.get("/api/generations/{tool_call_id}")
async def get_generation(
    tool_call_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        generation = get_generation_by_tool_call_id(con, tool_call_id)
        if not generation:
            raise HTTPException(404, "Generation not found")
        _generation_for_member(con, generation, user)
        return {"ok": True, "generation": generation}
    finally:
        con.close()

@app.get("/api/generations/workflow/{workflow_id}")
async def get_generation_for_workflow(
    workflow_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        generation = get_generation_by_workflow_id(con, workflow_id)
        if not generation:
            raise HTTPException(404, "Generation not found")
        _generation_for_member(con, generation, user)
        return {"ok": True, "generation": generation}
    finally:
        con.close()

# =============================================================================
# Referrals
# =============================================================================
@app.get("/api/referrals/stats")
async def get_referral_stats(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        return {"ok": True, **referrals.get_referral_stats(con, user["id"])}
    finally:
        con.close()

@app.post("/api/referrals/code")
async def ensure_referral_code(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        return {"ok": True, "referral_code": referrals.ensure_referral_code(con, user["id"])}
    finally:
        con.close()

@app.post("/api/referrals/register")
async def register_referral(
    body: ReferralRegister,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        return {"ok": True, **referrals.register_referral(con, user["id"], body.referral_code.strip())}
    finally:
        con.close()

@app.post("/api/referrals/preferred-workshop")
async def set_preferred_reward_workshop(
    body: PreferredWorkshop,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None)
):
    user = auth.require_user(auth.extract_token(authorization, token))
    con = db_conn()
    try:
        referrals.set_preferred_reward_workshop(con, user["id"], body.workshop_id)
        return {"ok": True}
    finally:
        con.close()

@app.post("/api/admin/referrals/purchase")
async def admin_process_purchase_reward(
    body: PurchaseReward,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        grant_id = referrals.process_purchase_reward(con, body.user_id, body.purchase_amount)
        return {"ok": True, "grant_id": grant_id}
    finally:
        con.close()

# =============================================================================
# Admin
# =============================================================================
@app.get("/api/admin/status")
async def admin_status(authorization: Optional[str] = Header(None), token: Optional[str] = Query(None)):
    user = auth.require_user(auth.extract_token(authorization, token))
    return {"ok": True, **admin_ops.current_admin_status(user)}

@app.get("/api/admin/workshops")
async def admin_list_workshops(
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, "workshops": admin_ops.list_workshops_for_credits(con, search, limit)}
    finally:
        con.close()

@app.post("/api/admin/workshops")
async def admin_create_workshop(
    body: AdminCreateWorkshop,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.create_workshop_for_user(con, body.owner_email, body.workspace_name,
                                                                 body.initial_credits)}
    finally:
        con.close()

@app.post("/api/admin/workshops/{workshop_id}/credits")
async def admin_grant_credits(
    workshop_id: str,
    body: AdminGrantCredits,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    admin_user = auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.grant_credits_to_workshop(
            con, admin_user["id"] if admin_user else None, workshop_id, body.amount,
            body.source, body.description, body.expires_in_days,
        )}
    finally:
        con.close()

@app.get("/api/admin/workshops/{workshop_id}/members")
async def admin_list_workshop_members(
    workshop_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, "members": admin_ops.list_workshop_members_for_admin(con, workshop_id)}
    finally:
        con.close()

@app.post("/api/admin/workshops/{workshop_id}/members")
async def admin_add_workshop_member(
    workshop_id: str,
    body: AdminAddMember,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.add_user_to_workspace(con, workshop_id, body.user_email, body.role)}
    finally:
        con.close()

@app.get("/api/admin/users")
async def admin_list_users(
    search: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=300),
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, "users": admin_ops.list_users_for_admin(con, search, limit)}
    finally:
        con.close()

@app.post("/api/admin/users")
async def admin_create_user(
    body: AdminCreateUser,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.create_user(con, body.email, body.name, body.mark_email_verified)}
    finally:
        con.close()

@app.post("/api/admin/users/role")
async def admin_set_user_role(
    body: AdminSetRole,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.set_user_role_for_admin(con, body.user_email, body.role)}
    finally:
        con.close()

@app.get("/api/admin/stats")
async def admin_platform_stats(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **admin_ops.get_platform_stats(con)}
    finally:
        con.close()

@app.post("/api/admin/backfill-credits")
async def admin_backfill_credits(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, "updated": workshops.backfill_credits(con)}
    finally:
        con.close()

# =============================================================================
# Fal Key Pool (Admin)
# =============================================================================
@app.get("/api/admin/fal/keys")
async def admin_list_fal_keys(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, "keys": list_fal_keys_for_admin(con)}
    finally:
        con.close()

@app.post("/api/admin/fal/keys")
async def admin_add_fal_key(
    body: FalKeyCreate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        key_id = add_fal_key(con, body.name, body.key, body.capacity, body.weight, body.enabled)
        log_event("info", "fal_key_added", f"Fal key added: {body.name}")
        return {"ok": True, "id": key_id}
    finally:
        con.close()

@app.patch("/api/admin/fal/keys/{key_id}")
async def admin_update_fal_key(
    key_id: str,
    body: FalKeyUpdate,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        update_fal_key(con, key_id, **body.model_dump())
        return {"ok": True, "id": key_id}
    finally:
        con.close()

@app.delete("/api/admin/fal/keys/{key_id}")
async def admin_remove_fal_key(
    key_id: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        remove_fal_key(con, key_id)
        return {"ok": True}
    finally:
        con.close()

@app.post("/api/admin/fal/keys/{key_id}/enabled")
async def admin_set_fal_key_enabled(
    key_id: str,
    body: FalKeyEnabled,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        set_fal_key_enabled(con, key_id, body.enabled)
        return {"ok": True}
    finally:
        con.close()

@app.post("/api/admin/fal/keys/test")
async def admin_test_fal_key(
    body: FalKeyTest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        target = resolve_key_to_test(con, body.key_id)
    finally:
        con.close()
    result = await probe_fal_key(target["name"], target["key"])
    return {"ok": True, **result}

@app.post("/api/admin/fal/seed")
async def admin_seed_fal_keys(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **seed_fal_keys_from_env_if_empty(con)}
    finally:
        con.close()

@app.get("/api/admin/fal/loads")
async def admin_fal_loads(
    stale_after_ms: Optional[int] = Query(None),
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {
            "ok": True,
            "loads": get_all_key_loads(con),
            "statistics": get_load_statistics(con, stale_after_ms),
        }
    finally:
        con.close()

@app.get("/api/admin/fal/health")
async def admin_fal_health(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **get_fal_health_overview(con)}
    finally:
        con.close()

@app.post("/api/admin/fal/maintenance")
async def admin_run_fal_maintenance(
    body: FalMaintenanceRequest,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    con = db_conn()
    try:
        return {"ok": True, **run_fal_maintenance(con, body.stale_after_ms, body.note or "manual")}
    finally:
        con.close()

@app.get("/api/admin/fal/crons")
async def admin_list_fal_crons(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    return {"ok": True, "crons": list_fal_crons()}

@app.post("/api/admin/fal/crons")
async def admin_ensure_fal_crons(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    return {"ok": True, **ensure_fal_crons()}

@app.delete("/api/admin/fal/crons/{name}")
async def admin_remove_fal_cron(
    name: str,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    x_admin_token: Optional[str] = Header(None)
):
    auth.require_admin(auth.extract_token(authorization, token), x_admin_token)
    return {"ok": True, **remove_fal_cron(name)}

# =============================================================================
# Run
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
