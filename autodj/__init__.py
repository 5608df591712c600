"""AutoDJ relay package."""


def create_app(*args, **kwargs):
    """Lazily import and instantiate the FastAPI application."""

    from autodj.main import create_app as _create_app  # local import to avoid eager deps

    return _create_app(*args, **kwargs)


__all__ = ["create_app"]
