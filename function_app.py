import os
from contextlib import asynccontextmanager

import azure.functions as func
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from azure.cosmos import exceptions as cosmos_exceptions
from fastapi.openapi.docs import get_swagger_ui_html

from counting_api.db import close_client, ensure_containers, store_backend
from counting_api.exceptions import ApplicationError
from counting_api.logging_config import logger, tracer
from counting_api.routes.catalog_route import router as catalog_router
from counting_api.routes.errors import http_error
from counting_api.routes.reconciliation_route import router as reconciliation_router
from counting_api.routes.run_route import router as run_router
from counting_api.routes.session_route import router as session_router


@asynccontextmanager
async def lifespan(_: FastAPI):
    if store_backend() == "cosmos" and os.environ.get("COSMOSDB_PROVISION", "").lower() in ("1", "true", "yes"):
        logger.info("Provisioning Cosmos DB containers")
        await ensure_containers()
    yield
    await close_client()


app = FastAPI(
    title="Inventory Counting API",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url=None,  # Disable default /docs
    redoc_url=None,
    lifespan=lifespan,
)


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui_html(req: Request) -> HTMLResponse:
    cdn_swagger_js_url = (
        "https://cdnjs.cloudflare.com/ajax/libs/swagger-ui/5.17.14/swagger-ui-bundle.js"
    )
    cdn_swagger_css_url = (
        "https://cdnjs.cloudflare.com/ajax/libs/swagger-ui/5.17.14/swagger-ui.css"
    )
    cdn_favicon_url = "https://fastapi.tiangolo.com/img/favicon.png"

    return get_swagger_ui_html(
        openapi_url="",
        title=app.title + " - Swagger UI",
        swagger_ui_parameters={"spec": app.openapi()},
        swagger_js_url=cdn_swagger_js_url,
        swagger_css_url=cdn_swagger_css_url,
        swagger_favicon_url=cdn_favicon_url,
    )


@app.exception_handler(cosmos_exceptions.CosmosHttpResponseError)
async def handle_cosmos_http_error(
    request: Request, exc: cosmos_exceptions.CosmosHttpResponseError
):
    with tracer.start_as_current_span("handle_cosmos_error") as span:
        span.set_attribute("error", True)
        span.set_attribute("error.type", "cosmos_http_error")
        span.set_attribute("error.status_code", exc.status_code)

        if exc.status_code in (401, 403):
            logger.warning(
                "Cosmos DB authentication error",
                extra={"status_code": exc.status_code, "path": request.url.path}
            )
            return JSONResponse(
                status_code=exc.status_code,
                content={
                    "detail": "Unauthorized" if exc.status_code == 401 else "Forbidden"
                },
            )

        logger.error(
            "Cosmos DB HTTP error",
            extra={
                "status_code": exc.status_code,
                "cosmos_message": str(exc),
                "path": request.url.path
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc)},
        )


@app.exception_handler(ApplicationError)
async def handle_application_error(_: Request, exc: ApplicationError):
    error = http_error(exc)
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or None
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"message": first.get("msg", "Invalid request"), "field": field}},
    )


@app.exception_handler(ValueError)
async def handle_value_error(_: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(session_router)
app.include_router(run_router)
app.include_router(reconciliation_router)
app.include_router(catalog_router)

function_app = func.FunctionApp()


@function_app.route(route="{*route}", auth_level=func.AuthLevel.FUNCTION)
async def main(req: func.HttpRequest) -> func.HttpResponse:
    """Azure Functions entry-point routed through FastAPI."""
    with tracer.start_as_current_span("process_request") as span:
        span.set_attribute("http.method", req.method)
        span.set_attribute("http.url", str(req.url))
        span.set_attribute("http.route", req.route_params.get('route', ''))

        logger.info(
            f"Processing {req.method} request",
            extra={
                "method": req.method,
                "path": str(req.url),
                "query_params": dict(req.params),
                "route": req.route_params.get('route', '')
            }
        )

        try:
            response = await func.AsgiMiddleware(app).handle_async(req)
            span.set_attribute("http.status_code", response.status_code)
            return response
        except Exception as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            span.set_attribute("error.message", str(e))

            logger.error(
                f"Error processing request: {str(e)}",
                extra={"error_type": type(e).__name__}
            )
            return func.HttpResponse(
                body=str(e),
                status_code=500
            )
