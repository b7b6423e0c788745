"""Capability checks against the API server, probed once at startup."""

import logging
import re

from kubernetes import client
from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)

MATCH_CONDITIONS_MIN_VERSION = (1, 28)


def parse_version(major, minor):
    """Parse the version reported by /version; minor may carry a suffix like '28+'."""
    digits = re.match(r"\d+", str(minor) or "")
    return int(major), int(digits.group(0)) if digits else 0


def match_conditions_supported(api_client=None):
    """Whether admission webhooks accept matchConditions on this cluster."""
    try:
        info = client.VersionApi(api_client).get_code()
    except ApiException as e:
        logger.warning(f"Could not read the API server version: {e}")
        return False

    version = parse_version(info.major, info.minor)
    supported = version >= MATCH_CONDITIONS_MIN_VERSION
    logger.info(
        f"API server version {version[0]}.{version[1]}, "
        f"match conditions {'enabled' if supported else 'disabled'}"
    )
    return supported
