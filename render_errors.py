"""Error types raised while turning a layout into a certificate PDF.

Only fatal errors escape ``CertificateRenderer.render``. ``FontEmbedFailure``
and ``FieldRenderFailure`` are raised internally, logged, and recovered from.
"""

from __future__ import annotations


class RenderError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AssetNotFound(RenderError):
    """A background or font file referenced by a layout is not on disk.

    ``storage_inconsistency`` separates a user-supplied file that has gone
    away (client error) from a confirmed layout whose assets vanished from
    storage (server error).
    """

    def __init__(self, kind: str, file_name: str, storage_inconsistency: bool = False) -> None:
        self.kind = kind
        self.file_name = file_name
        self.storage_inconsistency = storage_inconsistency
        super().__init__(
            f"{kind.capitalize()} file not found: {file_name}",
            status_code=500 if storage_inconsistency else 404,
        )


class BackgroundLoadError(RenderError):
    pass


class FontEmbedFailure(RenderError):
    def __init__(self, family: str, file_name: str, reason: str) -> None:
        self.family = family
        self.file_name = file_name
        super().__init__(f"Could not embed font '{family}' from {file_name}: {reason}")


class FontResolutionError(RenderError):
    pass


class FieldRenderFailure(RenderError):
    def __init__(self, field_name: str, reason: str) -> None:
        self.field_name = field_name
        super().__init__(f"Could not draw field '{field_name}': {reason}")


class SerializationFailure(RenderError):
    pass
