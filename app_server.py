import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from urllib.parse import quote

import jwt as pyjwt
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from auth import decode_bearer_token, get_current_user, username_from_claims
from certificate_render import (
    CertificateRenderer,
    RenderResult,
    build_zip,
    merge_row_values,
    read_csv_rows,
    render_batch,
    render_preview_png,
)
from layout_store import (
    AssetStore,
    Layout,
    LayoutStore,
    LayoutStoreError,
    certificate_file_name,
    sanitize_segment,
)
from render_errors import RenderError
from settings import Settings, configure_logging
from template_catalog import TemplateCatalog

logger = logging.getLogger(__name__)

# Exact-match public paths
_PUBLIC_API_PATHS: frozenset[str] = frozenset({"/api/health"})


class ApiError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LayoutCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    layout_name: str | None = Field(None, alias="layoutName")
    template_file: str | None = Field(None, alias="templateFile")
    fonts: list[dict[str, Any]] | None = None
    fields: list[dict[str, Any]] | None = None
    created_by: str | None = Field(None, alias="createdBy")


class LayoutUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_file: str | None = Field(None, alias="templateFile")
    fonts: list[dict[str, Any]] | None = None
    fields: list[dict[str, Any]] | None = None
    created_by: str | None = Field(None, alias="createdBy")


class TemplateReplaceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_file: str = Field(alias="templateFile")


class TemplateCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: str | None = Field(None, alias="templateId")
    template_name: str | None = Field(None, alias="templateName")
    description: str | None = None
    file_name: str | None = Field(None, alias="fileName")
    category: str | None = None


class CertificateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    layout_id: str | None = Field(None, alias="layoutId")
    data: dict[str, Any] | None = None


def _success(data: Any, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "message": message, "data": data},
    )


def _failure(message: str, status_code: int, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": message},
        headers=headers,
    )


def get_layouts(request: Request) -> LayoutStore:
    return request.app.state.layouts


def get_assets(request: Request) -> AssetStore:
    return request.app.state.assets


def get_renderer(request: Request) -> CertificateRenderer:
    return request.app.state.renderer


def get_templates(request: Request) -> TemplateCatalog:
    return request.app.state.templates


def _load_generation_request(
    body: CertificateRequest,
    layouts: LayoutStore,
    require_confirmed: bool = True,
) -> tuple[Layout, dict[str, Any]]:
    if not body.layout_id or body.data is None:
        raise ApiError("layoutId and data are required")
    if not body.data:
        raise ApiError("Data must be a non-empty object")
    layout = layouts.get(body.layout_id)
    if require_confirmed and not layout.confirmed:
        raise ApiError("Layout is not confirmed. Please confirm the layout first.")
    return layout, body.data


def _field_headers(result: RenderResult) -> dict[str, str]:
    headers = {}
    if result.skipped:
        headers["X-Skipped-Fields"] = ",".join(quote(name) for name in result.skipped)
    if result.failed:
        headers["X-Failed-Fields"] = ",".join(quote(name) for name in result.failed)
    return headers


router = APIRouter(prefix="/api")


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ── Uploads ────────────────────────────────────────────────────────────────────


@router.post("/upload/template")
def upload_template(file: UploadFile = File(...), assets: AssetStore = Depends(get_assets)) -> JSONResponse:
    info = assets.save_template(file.filename or "", file.file.read())
    return _success(info, "Template uploaded successfully", 201)


@router.post("/upload/font")
def upload_font(file: UploadFile = File(...), assets: AssetStore = Depends(get_assets)) -> JSONResponse:
    info = assets.save_font(file.filename or "", file.file.read())
    return _success(info, "Font uploaded successfully", 201)


@router.get("/fonts")
def list_fonts(assets: AssetStore = Depends(get_assets)) -> JSONResponse:
    fonts = assets.list_fonts()
    return _success(fonts, f"Found {len(fonts)} font(s)")


# ── Predefined templates ───────────────────────────────────────────────────────


@router.get("/templates")
def list_predefined_templates(templates: TemplateCatalog = Depends(get_templates)) -> JSONResponse:
    items = templates.list_templates()
    return _success([t.to_json_dict() for t in items], "Predefined templates retrieved successfully")


@router.get("/templates/{template_id}")
def get_predefined_template(template_id: str, templates: TemplateCatalog = Depends(get_templates)) -> JSONResponse:
    return _success(templates.get(template_id).to_json_dict(), "Template retrieved successfully")


@router.post("/templates")
def create_predefined_template(
    body: TemplateCreateRequest,
    templates: TemplateCatalog = Depends(get_templates),
) -> JSONResponse:
    template = templates.create(
        template_id=body.template_id,
        template_name=body.template_name,
        file_name=body.file_name,
        description=body.description,
        category=body.category,
    )
    return _success(template.to_json_dict(), "Template created successfully", 201)


# ── Layouts ────────────────────────────────────────────────────────────────────


@router.post("/layouts")
def create_layout(
    body: LayoutCreateRequest,
    layouts: LayoutStore = Depends(get_layouts),
    user: dict = Depends(get_current_user),
) -> JSONResponse:
    layout = layouts.save_new(
        layout_name=body.layout_name,
        template_file=body.template_file,
        fonts=body.fonts,
        fields=body.fields,
        created_by=body.created_by or username_from_claims(user),
    )
    return _success(layout.to_json_dict(), "Layout saved successfully", 201)


@router.get("/layouts")
def list_layouts(layouts: LayoutStore = Depends(get_layouts)) -> JSONResponse:
    items = layouts.list_layouts()
    return _success([layout.to_json_dict() for layout in items], f"Found {len(items)} layout(s)")


@router.get("/layouts/{layout_id}")
def get_layout(layout_id: str, layouts: LayoutStore = Depends(get_layouts)) -> JSONResponse:
    return _success(layouts.get(layout_id).to_json_dict(), "Layout retrieved successfully")


@router.put("/layouts/{layout_id}")
def update_layout(
    layout_id: str,
    body: LayoutUpdateRequest,
    layouts: LayoutStore = Depends(get_layouts),
    user: dict = Depends(get_current_user),
) -> JSONResponse:
    layout = layouts.update(
        layout_id,
        template_file=body.template_file,
        fonts=body.fonts,
        fields=body.fields,
        created_by=body.created_by or username_from_claims(user),
    )
    return _success(layout.to_json_dict(), "Layout updated successfully")


@router.post("/layouts/{layout_id}/confirm")
def confirm_layout(layout_id: str, layouts: LayoutStore = Depends(get_layouts)) -> JSONResponse:
    return _success(layouts.confirm(layout_id).to_json_dict(), "Layout confirmed successfully")


@router.put("/layouts/{layout_id}/template")
def replace_layout_template(
    layout_id: str,
    body: TemplateReplaceRequest,
    layouts: LayoutStore = Depends(get_layouts),
    assets: AssetStore = Depends(get_assets),
) -> JSONResponse:
    try:
        assets.resolve_background_path(body.template_file)
    except RenderError as exc:
        raise ApiError(exc.message, exc.status_code) from exc
    layout = layouts.replace_template(layout_id, body.template_file)
    return _success(layout.to_json_dict(), "Template replaced successfully")


@router.delete("/layouts/{layout_id}")
def delete_layout(layout_id: str, layouts: LayoutStore = Depends(get_layouts)) -> JSONResponse:
    layouts.delete(layout_id)
    return _success({"layoutId": layout_id}, "Layout deleted successfully")


# ── Certificates ───────────────────────────────────────────────────────────────


@router.post("/certificates/generate")
def generate_certificate(
    body: CertificateRequest,
    layouts: LayoutStore = Depends(get_layouts),
    renderer: CertificateRenderer = Depends(get_renderer),
) -> Response:
    layout, data = _load_generation_request(body, layouts)
    result = renderer.render(layout, data)
    file_name = certificate_file_name(data, layout)
    headers = {
        "Access-Control-Expose-Headers": "Content-Disposition, X-Certificate-Filename",
        "X-Certificate-Filename": file_name,
        "Content-Disposition": f'attachment; filename="{file_name}"',
        **_field_headers(result),
    }
    return Response(content=result.pdf_bytes, media_type="application/pdf", headers=headers)


@router.post("/certificates/generate-and-save")
def generate_and_save_certificate(
    request: Request,
    body: CertificateRequest,
    layouts: LayoutStore = Depends(get_layouts),
    renderer: CertificateRenderer = Depends(get_renderer),
) -> JSONResponse:
    layout, data = _load_generation_request(body, layouts)
    result = renderer.render(layout, data)
    file_name = certificate_file_name(data, layout, saved=True)

    certificates_dir: Path = request.app.state.settings.certificates_dir
    certificates_dir.mkdir(parents=True, exist_ok=True)
    (certificates_dir / file_name).write_bytes(result.pdf_bytes)

    payload = {
        "fileName": file_name,
        "fileSize": len(result.pdf_bytes),
        "skippedFields": result.skipped,
        "failedFields": result.failed,
    }
    response = _success(payload, "Certificate generated and saved successfully")
    response.headers["Access-Control-Expose-Headers"] = "Content-Disposition, X-Certificate-Filename"
    response.headers["X-Certificate-Filename"] = file_name
    return response


@router.post("/certificates/preview")
def preview_certificate(
    body: CertificateRequest,
    zoom: float = 1.0,
    layouts: LayoutStore = Depends(get_layouts),
    renderer: CertificateRenderer = Depends(get_renderer),
) -> Response:
    if not 0 < zoom <= 4:
        raise ApiError("zoom must be between 0 and 4")
    layout, data = _load_generation_request(body, layouts, require_confirmed=False)
    result = renderer.render(layout, data)
    png = render_preview_png(result.pdf_bytes, zoom=zoom)
    return Response(content=png, media_type="image/png", headers=_field_headers(result))


@router.post("/certificates/batch")
def generate_batch(
    layout_id: str = Form(..., alias="layoutId"),
    csv_file: UploadFile = File(...),
    field_mappings_json: str | None = Form(None),
    fixed_values_json: str | None = Form(None),
    layouts: LayoutStore = Depends(get_layouts),
    renderer: CertificateRenderer = Depends(get_renderer),
) -> Response:
    layout = layouts.get(layout_id)
    if not layout.confirmed:
        raise ApiError("Layout is not confirmed. Please confirm the layout first.")
    try:
        field_mappings = json.loads(field_mappings_json) if field_mappings_json else None
        fixed_values = json.loads(fixed_values_json) if fixed_values_json else None
        rows = read_csv_rows(csv_file.file.read().decode("utf-8-sig"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ApiError(f"Invalid batch input: {exc}") from exc

    data_rows = [merge_row_values(row, field_mappings, fixed_values) for row in rows]
    items = render_batch(renderer, layout, data_rows)
    zip_name = f"{sanitize_segment(layout.layout_id)}_certificates.zip"
    return Response(
        content=build_zip(items),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{zip_name}"'},
    )


@router.get("/certificates/{file_name}")
def download_certificate(file_name: str, request: Request) -> FileResponse:
    certificates_dir: Path = request.app.state.settings.certificates_dir
    safe_name = Path(file_name).name
    if safe_name != file_name or not safe_name.lower().endswith(".pdf"):
        raise ApiError("Invalid file path")
    file_path = certificates_dir / safe_name
    if not file_path.is_file():
        raise ApiError("Certificate file not found", 404)
    return FileResponse(file_path, media_type="application/pdf", filename=safe_name)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        settings.ensure_directories()
        yield

    app = FastAPI(title="Certificate Layout API", lifespan=lifespan)
    app.state.settings = settings
    app.state.layouts = LayoutStore(settings.layouts_dir)
    app.state.assets = AssetStore(settings.templates_dir, settings.fonts_dir)
    app.state.templates = TemplateCatalog(settings.template_catalog_path)
    app.state.renderer = CertificateRenderer(app.state.assets, image_page_size=settings.image_page_size)

    # ── CORS ──────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── AUTH MIDDLEWARE ───────────────────────────────────────────────────────
    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        """Reject unauthenticated calls to /api/* (except public endpoints)."""
        path = request.url.path
        if (
            settings.auth_disabled
            or not path.startswith("/api/")
            or path in _PUBLIC_API_PATHS
            or request.method == "OPTIONS"
        ):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return _failure("Missing or invalid Authorization header.", 401)

        token = auth_header.split(" ", 1)[1]
        try:
            decode_bearer_token(token, settings)
        except pyjwt.ExpiredSignatureError:
            return _failure("Token has expired.", 401, headers={"WWW-Authenticate": "Bearer"})
        except pyjwt.InvalidTokenError as exc:
            return _failure(f"Invalid token: {exc}", 401, headers={"WWW-Authenticate": "Bearer"})

        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "message": "Request validation failed.",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(RenderError)
    async def render_error_handler(request: Request, exc: RenderError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Certificate generation failed: %s", exc)
        return _failure(f"Failed to generate certificate: {exc.message}", exc.status_code)

    @app.exception_handler(LayoutStoreError)
    async def layout_error_handler(request: Request, exc: LayoutStoreError) -> JSONResponse:
        return _failure(exc.message, exc.status_code)

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        return _failure(exc.message, exc.status_code)

    app.include_router(router)
    return app


app = create_app()
