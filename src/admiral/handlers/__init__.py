"""Handler modules for the admiral operator.

Each module exposes a ``register_*`` function that binds kopf handlers to a
reconciler instance inside the given ``kopf.OperatorRegistry``.
"""

import logging

import kopf

from admiral.errors import TransientReconcileError, backoff_delay

logger = logging.getLogger(__name__)


def reconcile_or_retry(fn, retry, *args, **kwargs):
    """Run a reconcile function, turning transient failures into kopf retries."""
    try:
        return fn(*args, **kwargs)
    except TransientReconcileError as e:
        raise kopf.TemporaryError(str(e), delay=backoff_delay(retry)) from e


def plural_of(crd_registry, kind):
    return crd_registry.get_model_by_kind(kind)["plural"]
