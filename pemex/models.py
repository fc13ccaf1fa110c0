from abc import ABC, abstractmethod
from typing import List

from .secret import SecretHandle
from .utils import CertificateRef, StoreScope, StatusEvent


class CertificateStoreModel(ABC):

    @abstractmethod
    def list_certificates(self, scope: StoreScope) -> List[CertificateRef]:
        """Returns all certificates of the given scope"""

    @abstractmethod
    def get(self, thumbprint: str, scope: StoreScope) -> CertificateRef:
        """Returns the certificate with the given thumbprint"""

    @abstractmethod
    def build_chain_and_export(self, certificate: CertificateRef, secret: SecretHandle,
                               include_chain: bool = True) -> bytes:
        """Returns a PKCS#12 archive of the certificate, its private key and its chain"""


class StatusSinkModel(ABC):

    @abstractmethod
    def emit(self, event: StatusEvent) -> None:
        """Receives a pipeline status event"""
