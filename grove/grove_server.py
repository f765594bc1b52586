#!/usr/bin/env python3
"""
GROVE: Directory Tree File Server

A lightweight Python web server that exposes a local directory subtree over
HTTP: browsable listings (HTML for browsers, aligned plain text for
scripts), raw file downloads and optional uploads into a designated
directory.
"""

import argparse
import logging
import mimetypes
import os
import re
import sys
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote

import jinja2
import uvicorn
import yaml
from fastapi import APIRouter, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError, field_validator

from errors import (
    ConfigurationError,
    GroveError,
    InvalidFilenameError,
    NotFoundError,
    UploadsDisabledError,
)
from listing import ExclusionFilter, ListingPage, build_breadcrumbs, prepare_entries, render_html, render_text
from request_logging import configure_logging, install_request_logging
from resolver import Resolver, Target, TargetKind, make_resolver
from transfer import DEFAULT_CHUNK_SIZE, UploadStore, stream_file
from worker_pool import WorkerConfig, WorkerPool

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
FILES_URL = "/files"


# ============================================================================
# Configuration Models
# ============================================================================

class ServerConfig(BaseModel):
    """Server configuration"""
    host: str = "127.0.0.1"
    port: int = 8196
    root: str = "."
    snapshot: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    workers: int = 16
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert and self.tls_key)


class ListingConfig(BaseModel):
    """Visibility policy for listings and downloads"""
    include_dotfiles: bool = False
    exclude: Optional[str] = None

    @field_validator("exclude")
    @classmethod
    def check_exclude(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid exclude pattern {value!r}: {e}")
        return value

    def exclude_pattern(self) -> Optional[re.Pattern]:
        return re.compile(self.exclude) if self.exclude else None


class UploadsConfig(BaseModel):
    """Upload configuration"""
    enabled: bool = False
    directory: Optional[str] = None  # defaults to the platform temp directory
    timestamp: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "text"

    @field_validator("format")
    @classmethod
    def check_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError("log format must be 'text' or 'json'")
        return value

    @field_validator("level")
    @classmethod
    def check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"unknown log level {value!r}")
        return value


class AppConfig(BaseModel):
    """Application configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    listing: ListingConfig = Field(default_factory=ListingConfig)
    uploads: UploadsConfig = Field(default_factory=UploadsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    version: str = VERSION


# ============================================================================
# Application State
# ============================================================================

@dataclass
class GroveState:
    """Per-application collaborators shared by all request handlers"""
    config: AppConfig
    exclusion: ExclusionFilter
    resolver: Resolver
    uploads: UploadStore
    pool: WorkerPool

    @property
    def version(self) -> str:
        return self.config.version


def get_state(request: Request) -> GroveState:
    return request.app.state.grove


# ============================================================================
# Response Helpers
# ============================================================================

def error_status(exc: GroveError) -> int:
    """HTTP status for a failed request"""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, UploadsDisabledError):
        return 403
    if isinstance(exc, InvalidFilenameError):
        return 400
    return 500


def error_response(state: GroveState, exc: GroveError, html: bool):
    """
    Turn an error into a response.

    HTML clients get the listing page with only an error message (status
    200); everything else gets the message as body with a matching status.
    """
    status = error_status(exc)
    if status >= 500:
        logger.error(f"an error occurred: {exc}")
    else:
        logger.warning(f"request failed: {exc}")

    if html:
        page = ListingPage(version=state.version, error=str(exc))
        return HTMLResponse(content=render_html(page))
    return PlainTextResponse(content=f"{exc}\n", status_code=status)


def wants_html(request: Request, output_format: Optional[str]) -> bool:
    """Pick the listing format from ?format= or the Accept header"""
    if output_format == "html":
        return True
    if output_format == "text":
        return False
    if output_format is not None:
        raise HTTPException(status_code=400, detail=f"unsupported format: {output_format}")
    return "text/html" in request.headers.get("accept", "")


def file_response(state: GroveState, target: Target, download: bool) -> StreamingResponse:
    """Stream a regular file unmodified"""
    filename = os.path.basename(target.full_path)
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    headers = {"Content-Length": str(target.size)}
    if download:
        headers["Content-Disposition"] = f"attachment; filename*=utf-8''{quote(os.fsencode(filename))}"

    return StreamingResponse(
        stream_file(target.full_path, chunk_size=state.config.server.chunk_size, size=target.size),
        media_type=media_type,
        headers=headers
    )


def listing_response(state: GroveState, target: Target, html: bool):
    """Render a directory in the requested format"""
    files = prepare_entries(target.path, target.entries, state.exclusion)
    try:
        if not html:
            return PlainTextResponse(content=render_text(files))

        page = ListingPage(
            version=state.version,
            breadcrumbs=build_breadcrumbs(target.path),
            files=files,
            uploads_enabled=state.uploads.enabled,
            files_url=FILES_URL,
        )
        return HTMLResponse(
            content=render_html(page),
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"}
        )
    except (UnicodeError, jinja2.TemplateError) as e:
        logger.exception(f"Failed to render listing of /{target.path}")
        return error_response(state, GroveError(f"cannot render listing of /{target.path}: {e}"), html)


# ============================================================================
# API Endpoints
# ============================================================================

router = APIRouter()


@router.get("/")
async def redirect_to_files():
    """Redirect to the root listing"""
    return RedirectResponse(url=FILES_URL, status_code=301)


@router.get("/health")
async def health_check() -> Dict[str, str]:
    """Liveness probe"""
    return {"status": "healthy"}


@router.get("/version", response_class=PlainTextResponse)
async def get_version(request: Request):
    """Return the server version"""
    return f"{get_state(request).version}\n"


@router.get(FILES_URL)
@router.get(FILES_URL + "/{file_path:path}")
async def serve_files(
    request: Request,
    file_path: str = "",
    output_format: Optional[str] = Query(None, alias="format"),
    download: bool = False
):
    """List a directory or stream a file, decided by a single stat"""
    state = get_state(request)
    html = wants_html(request, output_format)

    try:
        target = await state.pool.run(state.resolver.resolve, file_path)
    except GroveError as e:
        return error_response(state, e, html)

    if target.kind is TargetKind.FILE:
        return file_response(state, target, download)
    if target.kind is TargetKind.DIRECTORY:
        return listing_response(state, target, html)
    raise AssertionError(f"unhandled target kind {target.kind}")


@router.post(FILES_URL)
async def upload_file(request: Request, file: Optional[UploadFile] = File(None)):
    """Store an uploaded file and return its stored name"""
    state = get_state(request)
    if not state.uploads.enabled:
        return error_response(state, UploadsDisabledError(), html=False)
    if file is None:
        return error_response(state, InvalidFilenameError("missing 'file' form field"), html=False)

    chunk_size = state.config.server.chunk_size

    async def chunks():
        while True:
            data = await file.read(chunk_size)
            if not data:
                break
            yield data

    try:
        record = await state.uploads.receive(
            file.filename or "",
            chunks(),
            expected_size=getattr(file, "size", None)
        )
    except GroveError as e:
        return error_response(state, e, html=False)
    finally:
        await file.close()

    return PlainTextResponse(content=f"{record.stored_name}\n")


# ============================================================================
# Application Factory
# ============================================================================

def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Build the FastAPI application for a configuration.

    In snapshot mode the file tree is walked here, once, before the first
    request; otherwise every request reads the filesystem.
    """
    config = config or AppConfig()
    root = os.path.abspath(config.server.root)

    exclusion = ExclusionFilter(
        include_dotfiles=config.listing.include_dotfiles,
        exclude=config.listing.exclude_pattern()
    )
    state = GroveState(
        config=config,
        exclusion=exclusion,
        resolver=make_resolver(root, exclusion, snapshot=config.server.snapshot),
        uploads=UploadStore(
            directory=config.uploads.directory or tempfile.gettempdir(),
            enabled=config.uploads.enabled,
            timestamp=config.uploads.timestamp
        ),
        pool=WorkerPool(WorkerConfig(max_workers=config.server.workers)),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown"""
        await state.pool.start()
        yield
        await state.pool.shutdown(wait=True)

    app = FastAPI(
        title="GROVE - Directory Tree File Server",
        description="Browse, download and upload files below a single root directory",
        version=config.version,
        lifespan=lifespan
    )
    app.state.grove = state
    app.include_router(router)
    install_request_logging(app)
    return app


# ============================================================================
# CLI and Main
# ============================================================================

# (argparse dest, config section, config key, environment variable)
OPTIONS = [
    ("root", "server", "root", "GROVE_ROOT"),
    ("host", "server", "host", "GROVE_HOST"),
    ("port", "server", "port", "GROVE_PORT"),
    ("snapshot", "server", "snapshot", "GROVE_SNAPSHOT"),
    ("workers", "server", "workers", "GROVE_WORKERS"),
    ("tls_cert", "server", "tls_cert", "GROVE_TLS_CERT"),
    ("tls_key", "server", "tls_key", "GROVE_TLS_KEY"),
    ("include_dotfiles", "listing", "include_dotfiles", "GROVE_INCLUDE_DOTFILES"),
    ("exclude", "listing", "exclude", "GROVE_EXCLUDE"),
    ("uploads", "uploads", "enabled", "GROVE_UPLOADS"),
    ("uploads_dir", "uploads", "directory", "GROVE_UPLOADS_DIR"),
    ("uploads_timestamp", "uploads", "timestamp", "GROVE_UPLOADS_TIMESTAMP"),
    ("log_level", "logging", "level", "GROVE_LOG_LEVEL"),
    ("log_format", "logging", "format", "GROVE_LOG_FORMAT"),
    ("log_file", "logging", "file", "GROVE_LOG_FILE"),
]


def load_config_from_file(config_file: str) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    with open(config_file, 'r') as f:
        config_dict = yaml.safe_load(f)
    return config_dict or {}


def build_config(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """
    Merge configuration sources; later ones win.

    Order: built-in defaults, YAML file, GROVE_* environment variables,
    command line flags.

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    environ = os.environ if environ is None else environ

    data: Dict[str, Any] = {}
    if getattr(args, "config", None):
        try:
            data = load_config_from_file(args.config)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot load config file {args.config}: {e}") from e

    for dest, section, key, env_name in OPTIONS:
        if env_name in environ:
            data.setdefault(section, {})[key] = environ[env_name]
    for dest, section, key, env_name in OPTIONS:
        value = getattr(args, dest, None)
        if value is not None:
            data.setdefault(section, {})[key] = value

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


def prepare_config(config: AppConfig) -> AppConfig:
    """
    Make paths absolute and check them before the server starts.

    Raises:
        ConfigurationError: If the root is missing or the uploads directory
            cannot be created
    """
    config.server.root = os.path.abspath(config.server.root)
    if not os.path.exists(config.server.root):
        raise ConfigurationError(f"root path does not exist: {config.server.root}")

    if config.uploads.enabled:
        directory = config.uploads.directory or tempfile.gettempdir()
        config.uploads.directory = os.path.abspath(directory)
        try:
            UploadStore(config.uploads.directory).ensure_directory()
        except GroveError as e:
            raise ConfigurationError(str(e)) from e

    if bool(config.server.tls_cert) != bool(config.server.tls_key):
        raise ConfigurationError("both a TLS certificate and a TLS key are required")
    return config


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="GROVE - Directory Tree File Server"
    )
    flag = dict(action="store_const", const=True, default=None)
    parser.add_argument("root", nargs="?", default=None, help="Directory (or file) to serve (default: .)")
    parser.add_argument("--config", type=str, help="Path to configuration file (YAML)")
    parser.add_argument("--host", type=str, help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port to bind to (default: 8196)")
    parser.add_argument("--snapshot", help="Walk the tree once at startup instead of on every request", **flag)
    parser.add_argument("--workers", type=int, help="Number of filesystem worker threads (default: 16)")
    parser.add_argument("--tls-cert", dest="tls_cert", type=str, help="TLS certificate file")
    parser.add_argument("--tls-key", dest="tls_key", type=str, help="TLS key file")
    parser.add_argument("--include-dotfiles", dest="include_dotfiles", help="Show dotfiles", **flag)
    parser.add_argument("--exclude", type=str, help="Hide names matching this regular expression")
    parser.add_argument("--uploads", help="Enable uploads", **flag)
    parser.add_argument("--uploads-dir", dest="uploads_dir", type=str, help="Uploads directory (default: temp dir)")
    parser.add_argument("--uploads-timestamp", dest="uploads_timestamp", help="Prefix uploads with a timestamp", **flag)
    parser.add_argument(
        "--log-level",
        dest="log_level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    parser.add_argument("--log-format", dest="log_format", choices=["text", "json"], help="Log format (default: text)")
    parser.add_argument("--log-file", dest="log_file", type=str, help="Also write logs to this file")
    return parser.parse_args(argv)


def enabled_routes(config: AppConfig) -> List[str]:
    routes = [
        f"/                   Redirect {FILES_URL}",
        f"GET  {FILES_URL}          List Files",
    ]
    if os.path.isdir(config.server.root):
        routes.append(f"GET  {FILES_URL}/{{path}}   List Files / Download")
    if config.uploads.enabled:
        routes.append(f"POST {FILES_URL}          Upload File")
    routes.append("GET  /health         Health Check")
    routes.append("GET  /version        Version")
    return routes


def log_banner(config: AppConfig):
    scheme = "https" if config.server.tls_enabled else "http"
    host = "localhost" if config.server.host == "0.0.0.0" else config.server.host

    logger.info("=" * 60)
    logger.info(f"GROVE - Directory Tree File Server {config.version}")
    logger.info("=" * 60)
    logger.info(f"Root: {config.server.root}")
    logger.info(f"Host: {config.server.host}")
    logger.info(f"Port: {config.server.port}")
    logger.info(f"Mode: {'Snapshot' if config.server.snapshot else 'On-demand'}")
    logger.info(f"Dotfiles: {'Shown' if config.listing.include_dotfiles else 'Hidden'}")
    logger.info(f"Exclude Pattern: {config.listing.exclude or 'Disabled'}")
    logger.info(f"Uploads Dir: {config.uploads.directory if config.uploads.enabled else 'Disabled'}")
    logger.info(f"Uploads Timestamp: {'Enabled' if config.uploads.timestamp else 'Disabled'}")
    logger.info(f"Log Level: {config.logging.level}")
    logger.info(f"Log Format: {config.logging.format}")
    logger.info(f"TLS: {'Enabled' if config.server.tls_enabled else 'Disabled'}")
    logger.info("-" * 60)
    for route in enabled_routes(config):
        logger.info(route)
    logger.info("=" * 60)
    logger.info(f"Serving files at {scheme}://{host}:{config.server.port}{FILES_URL}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    try:
        config = prepare_config(build_config(args))
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        return 1

    configure_logging(config.logging.level, config.logging.format, config.logging.file)

    try:
        app = create_app(config)
    except GroveError as e:
        logger.error(f"Failed to start: {e}")
        return 1

    log_banner(config)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        access_log=False,
        ssl_certfile=config.server.tls_cert,
        ssl_keyfile=config.server.tls_key
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
