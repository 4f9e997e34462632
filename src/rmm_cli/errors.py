"""Error taxonomy for RMM dependency management.

Every error carries a stable machine-readable ``code`` plus, once it has
travelled through the dependency manager, the identity of the dependency it
concerns and the stage (parse/resolve/fetch/lock/manifest/install) that failed.
"""

from typing import Any, Dict, List, Mapping, Optional


class Stage:
    """Names of the pipeline stages reported in errors."""
    PARSE = "parse"
    RESOLVE = "resolve"
    FETCH = "fetch"
    LOCK = "lock"
    MANIFEST = "manifest"
    INSTALL = "install"


class RmmError(Exception):
    """Base error carrying code, optional hint, dependency identity and stage."""

    code = "E_RMM"

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        dependency: Optional[str] = None,
        stage: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.dependency = dependency
        self.stage = stage
        self.context = dict(context or {})

    def annotate(self, *, dependency: Optional[str] = None, stage: Optional[str] = None) -> "RmmError":
        """Fill in dependency identity and stage unless already known."""
        if self.dependency is None and dependency:
            self.dependency = dependency
        if self.stage is None and stage:
            self.stage = stage
        return self

    def __str__(self) -> str:
        prefix = ""
        if self.dependency:
            prefix = f"[{self.dependency}"
            if self.stage:
                prefix += f" @ {self.stage}"
            prefix += "] "
        elif self.stage:
            prefix = f"[{self.stage}] "
        parts = [prefix + self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }
        if self.dependency is not None:
            payload["dependency"] = self.dependency
        if self.stage is not None:
            payload["stage"] = self.stage
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class MalformedSpec(RmmError):
    code = "E_MALFORMED_SPEC"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.PARSE)
        super().__init__(message, **kwargs)


class NoMatchingVersion(RmmError):
    code = "E_NO_MATCHING_VERSION"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.RESOLVE)
        super().__init__(message, **kwargs)


class AssetNotFound(RmmError):
    code = "E_ASSET_NOT_FOUND"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.RESOLVE)
        super().__init__(message, **kwargs)


class AmbiguousAsset(RmmError):
    """More than one release asset is an equally plausible default."""

    code = "E_AMBIGUOUS_ASSET"

    def __init__(self, message: str, *, candidates: Optional[List[str]] = None, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.RESOLVE)
        kwargs.setdefault("hint", "Pick one explicitly with the 'asset' field or --asset.")
        super().__init__(message, **kwargs)
        self.candidates = list(candidates or [])


class TransportError(RmmError):
    """A network operation failed in a way that retrying will not fix."""

    code = "E_TRANSPORT"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class TransportExhausted(TransportError):
    """Every proxy (or the direct connection) was retried without success."""

    code = "E_TRANSPORT_EXHAUSTED"

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("hint", "Check connectivity or configure GITHUB_PROXY with working endpoints.")
        super().__init__(message, cause=last_error, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


class IntegrityMismatch(RmmError):
    """Downloaded or cached content does not hash to the recorded digest."""

    code = "E_INTEGRITY"

    def __init__(self, message: str, *, expected: str = "", actual: str = "", **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.FETCH)
        kwargs.setdefault("hint", "The artifact changed upstream or was tampered with; re-resolve it deliberately.")
        context = dict(kwargs.pop("context", None) or {})
        context.setdefault("expected", expected)
        context.setdefault("actual", actual)
        super().__init__(message, context=context, **kwargs)
        self.expected = expected
        self.actual = actual


class LockCorrupt(RmmError):
    code = "E_LOCK_CORRUPT"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.LOCK)
        kwargs.setdefault("hint", "Delete rmm.lock and run 'rmm deps sync' to regenerate it.")
        super().__init__(message, **kwargs)


class NotFound(RmmError):
    code = "E_NOT_FOUND"


class ManifestError(RmmError):
    code = "E_MANIFEST"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("stage", Stage.MANIFEST)
        super().__init__(message, **kwargs)


class ManifestWriteConflict(ManifestError):
    code = "E_MANIFEST_CONFLICT"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("hint", "Another rmm process is writing this project; retry when it finishes.")
        super().__init__(message, **kwargs)


__all__ = [
    "AmbiguousAsset",
    "AssetNotFound",
    "IntegrityMismatch",
    "LockCorrupt",
    "MalformedSpec",
    "ManifestError",
    "ManifestWriteConflict",
    "NoMatchingVersion",
    "NotFound",
    "RmmError",
    "Stage",
    "TransportError",
    "TransportExhausted",
]
