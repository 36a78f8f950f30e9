"""Wire configuration into a ready-to-use reconciliation context."""
from __future__ import annotations

import logging

from .compat import UnsupportedVersionError, check_version
from .config import AppConfig
from .multipass import MultipassClient, MultipassError
from .reconcile import Diagnostics, ReconcileContext

LOGGER = logging.getLogger(__name__)


def configure_provider(
    config: AppConfig,
    *,
    client: MultipassClient | None = None,
) -> tuple[ReconcileContext, Diagnostics]:
    """Build the shared client and check the installed ``multipass`` version.

    A missing binary raises :class:`BinaryNotFoundError`. Version problems
    are reported as warnings only.
    """
    diags = Diagnostics()
    if client is None:
        client = MultipassClient.create(
            config.multipass_path,
            timeout=config.command_timeout,
            cache_ttl=config.cache_ttl,
        )

    try:
        raw = client.version()
    except MultipassError as exc:
        diags.warn("Unable to determine multipass version", str(exc))
    else:
        try:
            version = check_version(raw, config.min_version)
        except UnsupportedVersionError as exc:
            diags.warn("Unsupported multipass version", str(exc))
        else:
            LOGGER.debug("Using multipass %s", version)

    ctx = ReconcileContext(
        client=client,
        default_image=config.default_image,
        download_strategy=config.download.effective_strategy(),
    )
    return ctx, diags


__all__ = ["configure_provider"]
