"""
API Documentation utilities and enhanced OpenAPI configuration
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any, List

ERROR_RESPONSE_SCHEMA = {
    "type": "object",
    "required": ["success", "error", "timestamp"],
    "properties": {
        "success": {
            "type": "boolean",
            "example": False,
            "description": "Always false for error responses"
        },
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {
                    "type": "string",
                    "example": "INSUFFICIENT_RESOURCES",
                    "description": "Standardized error code"
                },
                "message": {
                    "type": "string",
                    "example": "Insufficient resources: ram (need 1000, have 500)",
                    "description": "Human-readable error message"
                },
                "field": {
                    "type": "string",
                    "example": "name",
                    "description": "Field that caused the error (optional)"
                },
                "context": {
                    "type": "object",
                    "description": "Additional error context, e.g. every short ledger field with needed/available"
                }
            }
        },
        "timestamp": {
            "type": "number",
            "example": 1699123456.789,
            "description": "Unix timestamp when error occurred"
        },
        "trace_id": {
            "type": "string",
            "example": "abc123def456",
            "description": "Trace ID for debugging (optional)"
        }
    }
}

STANDARD_RESPONSES = {
    code: {
        "description": description,
        "content": {
            "application/json": {
                "schema": {"$ref": "#/components/schemas/ErrorResponse"}
            }
        }
    }
    for code, description in [
        ("400", "Validation error or insufficient resources"),
        ("401", "Unauthorized"),
        ("403", "Forbidden"),
        ("404", "Not Found"),
        ("502", "The control panel rejected or failed the operation"),
        ("503", "The control panel is temporarily unavailable"),
    ]
}

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str,
                          tags: List[Dict[str, str]] = None) -> Dict[str, Any]:
    """Create enhanced OpenAPI schema with the shared error envelope"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "JWT with sub, remote_id, ledger_id and root_admin claims"
        }
    }
    components.setdefault("schemas", {})["ErrorResponse"] = ERROR_RESPONSE_SCHEMA

    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for code, response in STANDARD_RESPONSES.items():
                    operation["responses"].setdefault(code, response)

    if tags:
        openapi_schema["tags"] = tags

    app.openapi_schema = openapi_schema
    return app.openapi_schema

def install_openapi(app: FastAPI, description: str, tags: List[Dict[str, str]] = None) -> None:
    app.openapi = lambda: create_custom_openapi(app, app.title, app.version, description, tags)

SERVER_DOCS = """
## Servers

Create, resize and delete game servers on the control panel while keeping
each user's resource quota consistent with what actually runs.

Every lifecycle call is a saga: quota is checked and reserved first, the panel
is called second, and any failure after the reservation gives the quota back.
Insufficient-quota errors list every short resource with needed and available
amounts.
"""

PURGE_DOCS = """
## Purger

Deletes every tracked server whose name does not contain the retention
keyword. The purge runs in the background in bounded batches; poll the status
endpoint for progress.
"""

LEDGER_DOCS = """
## Resources

Per-user resource quota (RAM, disk, CPU, port allocations, databases, server
slots and coins), the coin store, and user lifecycle.
"""
