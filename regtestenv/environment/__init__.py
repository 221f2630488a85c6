"""Export and import pipelines for ``.caravan-env`` archives."""

from regtestenv.environment.exporter import EnvironmentExporter, ExportOptions, ExportResult
from regtestenv.environment.importer import (
    BinaryRestoreTransaction,
    EnvironmentImporter,
    ImportMethod,
    ImportOptions,
    ImportResult,
    RpcOverrides,
    build_config_from_manifest,
    import_into_new_profile,
    inspect_archive,
)

__all__ = [
    "EnvironmentExporter",
    "ExportOptions",
    "ExportResult",
    "BinaryRestoreTransaction",
    "EnvironmentImporter",
    "ImportMethod",
    "ImportOptions",
    "ImportResult",
    "RpcOverrides",
    "build_config_from_manifest",
    "import_into_new_profile",
    "inspect_archive",
]
