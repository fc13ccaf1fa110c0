"""
URL configuration for pemex_aip project.

Only the API is served: /api/v1/ (OpenAPI docs at /api/v1/docs).
"""
import hmac
from datetime import datetime

from django.urls import path
from ninja import NinjaAPI
from ninja.security import APIKeyHeader

from pemex import __version__
from pemex_aip import settings
from pemex_aip.api import router as certificates_router

api = NinjaAPI(
    title="Pemex API",
    version=__version__,
    description="This is an API to export certificates from a certificate store into PEM files for Linux TLS servers.",
)


class InvalidToken(Exception):
    pass


@api.exception_handler(InvalidToken)
def on_invalid_token(request, exc):
    return api.create_response(
        request,
        {
            "timestamp": int(datetime.now().timestamp() * 1000),
            "status": 401,
            "message": "Unauthorized",
            "data": {}
        }
        , status=401
    )


class ApiKey(APIKeyHeader):
    param_name = "X-API-Key"

    def authenticate(self, request, key):
        if not settings.api_key or key is None:
            raise InvalidToken

        if not hmac.compare_digest(key.encode("utf-8"), settings.api_key.encode("utf-8")):
            raise InvalidToken

        return key


api.auth = ApiKey()

api.add_router("certificates", certificates_router)

urlpatterns = [
    path("api/v1/", api.urls),
]
