import json
import logging
from datetime import datetime
from logging import Logger
from pathlib import Path
from typing import Optional, Union, Callable, List

from pydantic import SecretStr

from pemex.errors import PemexException, ValidationException, NoPrivateKeyError, AccessDeniedError

from .decomposer import PemDecomposer
from .exporter import PfxExporter
from .models import CertificateStoreModel, StatusSinkModel
from .secret import SecretHandle
from .toolchain import find_toolchain
from .utils import ExportRequest, PipelineResult, PipelineState, StatusEvent, Fixer


class LoggingSink(StatusSinkModel):
    LEVELS = {
        PipelineState.ABORTED: logging.WARNING,
        PipelineState.FAILED: logging.ERROR,
    }

    def __init__(self, logger: Optional[Logger] = None) -> None:
        self.logger = Fixer.logger(logger)

    def emit(self, event: StatusEvent) -> None:
        self.logger.log(self.LEVELS.get(event.stage, logging.INFO), f"{event.stage.value}: {event.message}")


class HistorySink(StatusSinkModel):
    """Archives the status events of every run as JSON lines"""

    def __init__(self, path: Union[str, Path], logger: Optional[Logger] = None) -> None:
        self.path = Path(path)
        self.logger = Fixer.logger(logger)

    def emit(self, event: StatusEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as history:
            history.write(json.dumps({
                "stage": event.stage.value,
                "timestamp": event.timestamp.isoformat(),
                "message": event.message,
            }) + "\n")

    def read(self) -> List[StatusEvent]:
        """
        Returns the archived events

        Returns
        -------
        List[StatusEvent] :
            All events, oldest first. Empty if nothing was archived yet
        """
        if not self.path.exists():
            return []

        events = []
        with open(self.path, "r", encoding="utf-8") as history:
            for line in history:
                if not line.strip():
                    continue
                entry = json.loads(line)
                events.append(StatusEvent(
                    stage=PipelineState(entry["stage"]),
                    timestamp=datetime.fromisoformat(entry["timestamp"]),
                    message=entry["message"],
                ))

        return events


class Pipeline:
    """
    Exports a certificate to a PKCS#12 archive and decomposes the archive into PEM files.

    Idle -> Validating -> Exporting -> Decomposing -> Complete. A rejected input ends the run in Aborted
    (nothing was written), a failure while exporting or decomposing ends it in Failed. Artifacts of finished stages
    are left in place. Nothing is retried. A failing status sink is logged and does not stop the run.
    """

    def __init__(self, store: CertificateStoreModel, sink: Optional[StatusSinkModel] = None,
                 decomposer: Optional[PemDecomposer] = None,
                 toolchain_finder: Optional[Callable[..., Path]] = None,
                 logger: Optional[Logger] = None) -> None:
        self.logger = Fixer.logger(logger)
        self.sink = sink if sink is not None else LoggingSink(self.logger)
        self.exporter = PfxExporter(store, logger=self.logger)
        self.decomposer = decomposer if decomposer is not None else PemDecomposer(logger=self.logger)
        self.toolchain_finder = toolchain_finder if toolchain_finder is not None else find_toolchain

    def __transition(self, result: PipelineResult, stage: PipelineState, message: str) -> None:
        event = StatusEvent(stage=stage, timestamp=Fixer.now(), message=message)
        result.state = stage
        result.events.append(event)
        try:
            self.sink.emit(event)
        except Exception as e:
            self.logger.warning(f"The status sink failed, the run goes on. param({event.stage=}, {e=})")

    def __stop(self, result: PipelineResult, stage: PipelineState, error: PemexException) -> PipelineResult:
        result.error = error
        message = f"{error}"
        if isinstance(error, AccessDeniedError):
            message = f"{message}. {error.hint}"

        self.__transition(result, stage, message)
        return result

    def __unexpected(self, error: Exception, stage: PipelineState) -> PemexException:
        """Wraps an error that is not a PemexException so the run still ends in Failed"""
        self.logger.exception(f"Unexpected error. param({stage=}, {error=})")
        wrapped = PemexException(f"Unexpected error: {error}", stage=stage.value)
        wrapped.__cause__ = error
        return wrapped

    def run(self, request: ExportRequest, password: Union[str, bytes, bytearray, SecretStr, None]) -> PipelineResult:
        """
        Runs the pipeline once

        Parameters
        ----------
        request : ExportRequest
            What to export and where to
        password : Union[str, bytes, bytearray, SecretStr, None]
            The password of the archive. Wiped when the run ends

        Returns
        -------
        PipelineResult :
            The final state, the artifacts, the error if any and every status event of the run
        """
        certificate = request.certificate
        self.logger.info(f"Running the pipeline. param({certificate.thumbprint=}, {request.pfx_path=}, "
                         f"{request.output_dir=}, {request.policy=})")

        result = PipelineResult()
        self.__transition(result, PipelineState.VALIDATING, f"Validating the export of {certificate.subject}")

        try:
            secret = SecretHandle(password)
        except ValidationException as e:
            e.stage = PipelineState.VALIDATING.value
            return self.__stop(result, PipelineState.ABORTED, e)

        with secret:
            if not certificate.has_private_key:
                return self.__stop(result, PipelineState.ABORTED, NoPrivateKeyError(
                    f"Certificate {certificate.thumbprint} has no private key",
                    stage=PipelineState.VALIDATING.value))

            self.__transition(result, PipelineState.EXPORTING, f"Exporting to {request.pfx_path}")
            try:
                result.pfx = self.exporter.export(certificate, request.pfx_path, secret, request.policy)
            except PemexException as e:
                return self.__stop(result, PipelineState.FAILED, e)
            except Exception as e:
                return self.__stop(result, PipelineState.FAILED, self.__unexpected(e, PipelineState.EXPORTING))

            if not result.pfx.chain_included:
                result.warnings.append("The certification chain could not be built. "
                                       "The archive holds the certificate and its private key only")

            self.__transition(result, PipelineState.DECOMPOSING,
                              f"Decomposing {result.pfx.path} into {request.output_dir}")
            try:
                toolchain = self.toolchain_finder(request.toolchain, logger=self.logger)
                result.pem = self.decomposer.decompose(toolchain, result.pfx, request.output_dir, request.policy)
            except PemexException as e:
                return self.__stop(result, PipelineState.FAILED, e)
            except Exception as e:
                return self.__stop(result, PipelineState.FAILED, self.__unexpected(e, PipelineState.DECOMPOSING))

        self.__transition(result, PipelineState.COMPLETE, f"Written {result.pem.full_chain.name} and its parts "
                                                          f"to {result.pem.output_dir}")
        return result
