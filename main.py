import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from errors import RateLimited, VideoPipelineError
from routers.video_jobs import router as video_jobs_router

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

app = FastAPI(
    title="Property Video Generator",
    description="Turns a batch of property photos into one stitched walkthrough video."
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(video_jobs_router)


# --------------------------------------------------------------------------
# --- Error Handling ---
# --------------------------------------------------------------------------

@app.exception_handler(VideoPipelineError)
async def pipeline_error_handler(request: Request, exc: VideoPipelineError):
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
    else:
        logging.info(f"{request.method} {request.url.path} rejected with {exc.code}: {exc.message}")

    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message, **exc.extra()},
        headers=headers,
    )


# --------------------------------------------------------------------------
# --- API Endpoints ---
# --------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"status": "🚀 Property Video Generator is running!"}
