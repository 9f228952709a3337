"""
# `app/main.py` - application entry point

FastAPI app for the Domaine Vallot cart and pricing core.

Routers
- `/cart` : authoritative cart store (Firebase ID token required)
- `/vat`  : VAT preview and rate table (public)

Errors
Every HTTPException is returned as `{"error": "<message>"}` and request validation
failures as 400 `{"error": "Invalid request data", "details": [...]}`; the cart client
reads the `error` string from any non-2xx response.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.app.config import settings
from backend.app.routers import carts, vat

# Initialize FastAPI app
app = FastAPI(
    title="Domaine Vallot Cart & Pricing API",
    description="Cart store and EU VAT calculation for the Domaine Vallot wine shop.",
    version="1.0.0",
    redirect_slashes=False,
    debug=settings.debug,
)

# Configure CORS (allow front-end domain or all origins as specified)
allow_origins = [origin.strip() for origin in settings.allowed_origins.split(',')] if settings.allowed_origins else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    details = [
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request data", "details": details})


app.include_router(carts.router)
app.include_router(vat.router)

# Run the app directly with uvicorn (for development)
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.app.main:app", host="0.0.0.0", port=8000, reload=True)
