from datetime import datetime
from pathlib import Path
from typing import Literal, Optional, List

from ninja import Router

from pemex import Pipeline, PemDecomposer, HistorySink
from pemex.errors import (PemexException, ValidationException, AccessDeniedError, StoreReadError, ArchiveReadError,
                          ConflictError, ToolchainException)
from pemex.store import open_store
from pemex.utils import (CertificateRef, PemArtifactSet, StatusEvent, PipelineResult, StoreScope,
                         OutputConflictPolicy, ExportRequest, Checker)
from pemex_aip import settings

from pemex_aip.schemas import ReturnSchema, ExportSchema

router = Router()

RESPONSES = {200: ReturnSchema, 201: ReturnSchema, 400: ReturnSchema, 403: ReturnSchema, 404: ReturnSchema,
             409: ReturnSchema, 500: ReturnSchema, 502: ReturnSchema}


def certificate_dataclass_to_schema(certificate: CertificateRef):
    return {
        "scope": certificate.scope.value,
        "locator": certificate.locator,
        "subject": certificate.subject,
        "friendly_name": certificate.friendly_name,
        "thumbprint": certificate.thumbprint,
        "expires_at": certificate.expires_at.isoformat(),
        "has_private_key": certificate.has_private_key,
    }


def artifacts_dataclass_to_schema(artifacts: Optional[PemArtifactSet]):
    if artifacts is None:
        return None

    return {
        "output_dir": str(artifacts.output_dir),
        "cert": str(artifacts.cert),
        "private_key": str(artifacts.private_key),
        "chain": str(artifacts.chain),
        "full_chain": str(artifacts.full_chain),
    }


def events_dataclass_to_schema(events: List[StatusEvent]):
    return [
        {
            "stage": event.stage.value,
            "timestamp": event.timestamp.isoformat(),
            "message": event.message,
        }
        for event in events
    ]


def result_dataclass_to_schema(result: PipelineResult):
    return {
        "state": result.state.value,
        "pfx": str(result.pfx.path) if result.pfx is not None else None,
        "chain_included": result.pfx.chain_included if result.pfx is not None else None,
        "pem": artifacts_dataclass_to_schema(result.pem),
        "warnings": result.warnings,
        "events": events_dataclass_to_schema(result.events),
    }


def status_of(error: PemexException) -> int:
    if isinstance(error, ValidationException):
        return 400
    if isinstance(error, AccessDeniedError):
        return 403
    if isinstance(error, (StoreReadError, ArchiveReadError)):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, ToolchainException):
        return 502
    return 500


def message_of(error: PemexException) -> str:
    if isinstance(error, AccessDeniedError):
        return f"{error}. {error.hint}"
    return f"{error}"


def returnify(status, message, data):
    return status, {
        "timestamp": int(datetime.now().timestamp() * 1000),
        "status": status,
        "message": message,
        "data": data
    }


def the_store():
    return open_store(settings.store, logger=settings.logging.getLogger('pemex_api'))


@router.get('', response=RESPONSES, tags=["Certificates"],
            description="Returns all certificates of a store scope")
def get_certificates(request, scope: Literal["UserPersonal", "MachinePersonal"] = "UserPersonal"):
    try:
        certificates = the_store().list_certificates(StoreScope(scope))
        return returnify(200, "Success",
                         [certificate_dataclass_to_schema(certificate) for certificate in certificates])
    except PemexException as e:
        return returnify(status_of(e), message_of(e), {})
    except Exception as e:
        return returnify(500, f"{e}", {})


@router.post('/export', response=RESPONSES, tags=["Certificates"],
             description="Exports a certificate to `<name>.pfx` and decomposes it into `<name>-cert.pem`, "
                         "`<name>-privkey.pem` (not encrypted), `<name>-chain.pem` and `<name>-fullchain.pem` "
                         "in the output directory. `201` means the pipeline completed. Otherwise `data` carries the "
                         "state the pipeline stopped in and its status events.")
def export_certificate(request, payload: ExportSchema):
    logger = settings.logging.getLogger('pemex_api')
    try:
        store = the_store()
        certificate = store.get(payload.thumbprint, StoreScope(payload.scope))

        name = payload.name or certificate.friendly_name or certificate.thumbprint
        Checker.safe(name, "Name")

        output_dir = Path(settings.output)
        the_request = ExportRequest(
            certificate=certificate,
            pfx_path=output_dir / f"{name}.pfx",
            output_dir=output_dir,
            policy=OutputConflictPolicy(payload.policy),
            toolchain=Path(settings.openssl) if settings.openssl else None,
        )

        pipeline = Pipeline(
            store,
            sink=HistorySink(settings.history, logger=logger) if settings.history else None,
            decomposer=PemDecomposer(timeout=settings.timeout, legacy=settings.legacy, logger=logger),
            logger=logger,
        )
        result = pipeline.run(the_request, payload.password)
    except ValueError as e:
        return returnify(400, f"{e}", {})
    except PemexException as e:
        return returnify(status_of(e), message_of(e), {})
    except Exception as e:
        return returnify(500, f"{e}", {})

    if result.ok:
        return returnify(201, "Success", result_dataclass_to_schema(result))

    return returnify(status_of(result.error), message_of(result.error), result_dataclass_to_schema(result))


@router.get('/{thumbprint}', response=RESPONSES, tags=["Certificates"],
            description="Returns a certificate by its thumbprint")
def get_certificate(request, thumbprint: str, scope: Literal["UserPersonal", "MachinePersonal"] = "UserPersonal"):
    try:
        certificate = the_store().get(thumbprint, StoreScope(scope))
        return returnify(200, "Success", certificate_dataclass_to_schema(certificate))
    except ValueError as e:
        return returnify(400, f"{e}", {})
    except PemexException as e:
        return returnify(status_of(e), message_of(e), {})
    except Exception as e:
        return returnify(500, f"{e}", {})
