# EmailClean Backend - Bulk Email Validation API
# Flask API that accepts CSV uploads, validates every row in the background
# and serves the annotated result file once the job has completed

import atexit
import logging
import uuid
from functools import wraps

from flask import Flask, Response, g, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import rate_limiter
import storage
from auth import StaticTokenVerifier, TokenVerifier, parse_bearer
from config import Config
from dispatcher import DispatcherBusy, JobDispatcher
from job_monitor import JobMonitor
from job_store import create_store
from lifecycle import JobLifecycleManager
from logging_utils import configure_logging, request_id_ctx
from transcoder import Transcoder
from validator import build_validator

configure_logging(Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create Flask app with configuration
app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = Config.MAX_CONTENT_LENGTH

# Configure CORS - restrictive by default
cors_origins = Config.get_cors_origins()
if cors_origins:
    CORS(app, origins=cors_origins)
    logger.info(f"CORS enabled for origins: {cors_origins}")
else:
    CORS(app, origins=["http://localhost:3000", "http://127.0.0.1:3000"])
    logger.info("CORS enabled for localhost development only")

# Storage, job store and processing pipeline
storage.ensure_storage_dirs()
purged = storage.purge_expired_results(Config.RESULT_RETENTION_DAYS)
stale = storage.purge_stale_uploads()
if purged or stale:
    logger.info(f"Startup cleanup: {purged} expired results, {stale} stale uploads removed")

store = create_store(Config.STORE_BACKEND, db_path=Config.DB_PATH, redis_url=Config.REDIS_URL)
lifecycle = JobLifecycleManager(
    store,
    terminal_retries=Config.TERMINAL_WRITE_RETRIES,
    retry_backoff_ms=Config.TERMINAL_RETRY_BACKOFF_MS,
)
transcoder = Transcoder(
    build_validator(
        Config.VALIDATOR_MODE,
        dns_timeout=Config.DNS_TIMEOUT_SECONDS,
        cache_ttl_minutes=Config.DNS_CACHE_TTL_MINUTES,
    ),
    lifecycle,
    batch_size=Config.PROGRESS_BATCH_SIZE,
)
dispatcher = JobDispatcher(lifecycle, transcoder, max_concurrent=Config.MAX_CONCURRENT_JOBS)
token_verifier: TokenVerifier = StaticTokenVerifier(Config.get_auth_tokens())

logger.info(
    "EmailClean started",
    extra={"max_upload_mb": Config.MAX_UPLOAD_MB},
)
print(
    f">>> EMAILCLEAN (validator={Config.VALIDATOR_MODE}, store={Config.STORE_BACKEND}) "
    f"- Bulk Email Validation Service • Version {Config.VERSION} <<<"
)


# ============================================================================
# Stall monitor
# ============================================================================

monitor = JobMonitor(lifecycle)
monitor.start()


def cleanup_on_exit() -> None:
    """Clean shutdown of background services."""
    logger.debug("Shutting down background services...")
    monitor.stop()


atexit.register(cleanup_on_exit)


# Request ID middleware
@app.before_request
def set_request_id() -> None:
    """Set request ID from header or generate new one."""
    req_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request_id_ctx.set(req_id)
    g.request_id = req_id


@app.after_request
def add_request_id_header(response: Response) -> Response:
    """Add request ID to response headers."""
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


# Exception handler
@app.errorhandler(Exception)
def handle_exception(e: Exception) -> tuple[Response, int]:
    """Log exceptions and return safe error response."""
    if isinstance(e, HTTPException):
        code = (e.name or "error").upper().replace(" ", "_")
        return error_response(code, e.description or e.name, status_code=e.code or 500)
    logger.exception("Unhandled exception", exc_info=e)
    return error_response("INTERNAL_ERROR", "Internal server error", status_code=500)


@app.errorhandler(413)
def handle_too_large(e: Exception) -> tuple[Response, int]:
    """Handle file too large error."""
    max_mb = Config.MAX_UPLOAD_MB
    return error_response(
        code="FILE_TOO_LARGE",
        message=f"File too large. Maximum size is {max_mb}MB",
        details={"max_upload_mb": max_mb},
        status_code=413,
    )


def error_response(
    code: str,
    message: str,
    details: dict | None = None,
    status_code: int = 400,
) -> tuple[Response, int]:
    """
    Create a structured error response.

    Args:
        code: Error code (e.g., "INVALID_FILE_TYPE", "TOO_MANY_CONCURRENT_JOBS")
        message: Human-readable message
        details: Optional additional details
        status_code: HTTP status code
    """
    payload: dict = {
        "error": {
            "code": code,
            "message": message,
        },
        "request_id": g.get("request_id", "unknown"),
    }
    if details:
        payload["error"]["details"] = details

    return jsonify(payload), status_code


# ============================================================================
# Bearer Token Authentication Decorator
# ============================================================================


def require_user(f):
    """
    Decorator to require a bearer token for protected endpoints.
    The verified user id is available to the view as g.user_id.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        token = parse_bearer(request.headers.get("Authorization"))
        if token is None:
            return error_response(
                "UNAUTHORIZED",
                "Missing or malformed bearer token",
                {"hint": "Provide an 'Authorization: Bearer <token>' header"},
                401,
            )

        user_id = token_verifier.verify(token)
        if user_id is None:
            logger.warning("Rejected bearer token")
            return error_response("INVALID_TOKEN", "Invalid token", status_code=403)

        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated


# ============================================================================
# Rate Limiting Decorator
# ============================================================================


def rate_limit(f):
    """
    Decorator to apply upload rate limiting.
    Limits per client IP and per authenticated owner; must sit below
    require_user. Disabled in testing mode.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        # Disable rate limiting in testing mode
        if Config.TESTING:
            return f(*args, **kwargs)

        # Get client IP (handle proxies)
        client_ip = request.headers.get("X-Forwarded-For", request.remote_addr)
        if client_ip and "," in client_ip:
            client_ip = client_ip.split(",")[0].strip()

        limit = Config.RATE_LIMIT_UPLOADS_PER_MINUTE
        allowed, reason, details = rate_limiter.rate_limiter.is_allowed(
            {
                f"ip:{client_ip or 'unknown'}": limit,
                f"owner:{g.user_id}": limit,
            },
            window=60,
        )

        if not allowed:
            logger.warning("Rate limit exceeded", extra={"owner_id": g.user_id})
            return error_response("RATE_LIMIT_EXCEEDED", reason, details, 429)

        return f(*args, **kwargs)

    return decorated


def too_many_jobs_response() -> tuple[Response, int]:
    running = dispatcher.active_count()
    logger.warning("Concurrent job limit reached", extra={"running_jobs": running})
    return error_response(
        code="TOO_MANY_CONCURRENT_JOBS",
        message=(
            f"Maximum {Config.MAX_CONCURRENT_JOBS} concurrent jobs allowed. "
            f"Currently running: {running}. Please wait for a job to complete."
        ),
        details={"running_jobs": running, "max_allowed": Config.MAX_CONCURRENT_JOBS},
        status_code=429,
    )


# ============================================================================
# API Endpoints
# ============================================================================


@app.route("/api/upload", methods=["POST"])
@require_user
@rate_limit
def upload() -> tuple[Response, int] | Response:
    """
    Upload a CSV file and start a validation job.
    Returns as soon as the job exists; processing continues in the background.
    """
    # Check concurrency limit FIRST, before the body is saved
    if dispatcher.at_capacity():
        return too_many_jobs_response()

    if "file" not in request.files:
        return error_response("NO_FILE", "No file uploaded")

    file = request.files["file"]
    if not file.filename:
        return error_response("NO_FILE", "No file selected")

    if not file.filename.lower().endswith(".csv"):
        return error_response(
            "INVALID_FILE_TYPE",
            "File must be a CSV",
            {"file_name": file.filename},
        )

    upload_path = storage.new_upload_path()
    try:
        file.save(upload_path)
    except OSError:
        logger.exception("Could not save upload", extra={"owner_id": g.user_id})
        storage.remove_upload(upload_path)
        return error_response("UPLOAD_FAILED", "Could not save uploaded file", status_code=500)
    if upload_path.stat().st_size == 0:
        storage.remove_upload(upload_path)
        return error_response("EMPTY_FILE", "Uploaded file is empty")

    try:
        job_id = dispatcher.submit(g.user_id, file.filename, upload_path)
    except DispatcherBusy:
        return too_many_jobs_response()
    except Exception:
        logger.exception("Could not create job", extra={"owner_id": g.user_id})
        return error_response("JOB_CREATE_FAILED", "Could not create job", status_code=500)

    logger.info(
        "Job submitted",
        extra={"job_id": job_id, "owner_id": g.user_id, "file_name": file.filename},
    )
    return jsonify(
        {
            "success": True,
            "job_id": job_id,
            "message": "File uploaded. Validation started in the background.",
        }
    )


@app.route("/api/jobs")
@require_user
def list_jobs() -> Response:
    """List the caller's most recent jobs, newest first."""
    jobs = lifecycle.list_recent(g.user_id, Config.LIST_JOBS_LIMIT)
    return jsonify({"jobs": jobs})


@app.route("/api/jobs/<job_id>")
@require_user
def get_job_detail(job_id: str) -> tuple[Response, int] | Response:
    """Get the current state of one job owned by the caller."""
    job = lifecycle.get(job_id)
    if not job:
        return error_response("JOB_NOT_FOUND", "Job not found", status_code=404)
    if job["owner_id"] != g.user_id:
        return error_response("FORBIDDEN", "Job belongs to another user", status_code=403)
    return jsonify(job)


@app.route("/api/download/<path:filename>")
def download(filename: str) -> tuple[Response, int] | Response:
    """
    Download a completed job's result file.
    No auth: result names embed an unguessable job id.
    """
    try:
        path = storage.resolve_result(filename, lifecycle)
    except storage.AccessDenied:
        logger.warning("Download denied")
        return error_response("ACCESS_DENIED", "Access denied", status_code=403)
    except storage.ResultNotFound:
        return error_response(
            "RESULT_NOT_FOUND",
            "File not found. It may have been deleted or expired.",
            status_code=404,
        )

    try:
        return send_file(path, as_attachment=True, download_name=filename, mimetype="text/csv")
    except OSError:
        logger.exception("Could not read result file")
        return error_response("DOWNLOAD_FAILED", "Could not read result file", status_code=500)


@app.route("/health")
def health() -> Response:
    """Health check endpoint."""
    return jsonify({"status": "ok"})


@app.route("/metrics")
def metrics() -> Response:
    """
    Simple metrics endpoint for monitoring.
    Returns JSON with job counts, storage stats, and configuration.
    """
    storage_stats = storage.get_storage_stats()

    return jsonify(
        {
            "status": "ok",
            "server_version": Config.VERSION,
            "timestamp": Config.now_utc().isoformat(),
            "validator_mode": Config.VALIDATOR_MODE,
            "store_backend": Config.STORE_BACKEND,
            "jobs": {
                "running": dispatcher.active_count(),
                "processing": lifecycle.count_processing(),
                "max_concurrent": Config.MAX_CONCURRENT_JOBS,
            },
            "storage": {
                "storage_dir": Config.STORAGE_DIR,
                "uploads_count": storage_stats["uploads_count"],
                "results_count": storage_stats["results_count"],
                "uploads_size_mb": round(storage_stats["uploads_size_bytes"] / 1024 / 1024, 2),
                "results_size_mb": round(storage_stats["results_size_bytes"] / 1024 / 1024, 2),
            },
            "config": {
                "max_upload_mb": Config.MAX_UPLOAD_MB,
                "progress_batch_size": Config.PROGRESS_BATCH_SIZE,
                "result_retention_days": Config.RESULT_RETENTION_DAYS,
                "stall_timeout_minutes": Config.JOB_STALL_TIMEOUT_MINUTES,
            },
        }
    )


# Helper for tests to reset shared state
def clear_state_for_testing() -> None:
    """Wait for running jobs, then clear the job store and rate limiter. Only for tests."""
    dispatcher.wait_all(timeout=10)
    store.clear()
    rate_limiter.rate_limiter.clear()


if __name__ == "__main__":
    app.run(debug=Config.DEBUG, port=Config.PORT, host=Config.HOST)
