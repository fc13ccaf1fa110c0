from .secret import SecretHandle
from .utils import (CertificateRef, StoreScope, OutputConflictPolicy, PipelineState, PfxArtifact, PemArtifactSet,
                    StatusEvent, ExportRequest, PipelineResult)
from .store import DirectoryCertificateStore, WindowsCertificateStore
from .toolchain import find_toolchain
from .exporter import PfxExporter
from .decomposer import PemDecomposer
from .pipeline import Pipeline, LoggingSink, HistorySink

__version__ = "0.1.0"
