"""
Secret generation and the owner-only deployment file.
"""

import json
import logging
import secrets
from pathlib import Path

from .config import DeploymentConfig, SecretBundle
from .errors import PreconditionError
from .host import atomic_write

logger = logging.getLogger(__name__)

KEY_BITS = 256
PASSWORD_BITS = 128


def generate_secret(bits: int) -> str:
    """
    Generate hex-encoded key material from the OS CSPRNG.

    Args:
        bits: Size of the secret; a positive multiple of 8

    Returns:
        Lowercase hex string of bits/4 characters

    Raises:
        ValueError: If bits is not a positive multiple of 8
        PreconditionError: If no secure randomness source is available
    """
    if bits <= 0 or bits % 8:
        raise ValueError(f"bits must be a positive multiple of 8, got {bits}")
    try:
        return secrets.token_bytes(bits // 8).hex()
    except NotImplementedError as e:
        # os.urandom has no source on this platform; never substitute a weaker one
        raise PreconditionError(
            "No cryptographically secure randomness source is available",
            hint="Run on a host that provides /dev/urandom or getrandom()",
        ) from e


def generate_bundle() -> SecretBundle:
    """Generate every secret a deployment needs, each independently."""
    return SecretBundle(
        repo_signing_key=generate_secret(KEY_BITS),
        plc_rotation_key=generate_secret(KEY_BITS),
        dpop_secret=generate_secret(KEY_BITS),
        jwt_secret=generate_secret(KEY_BITS),
        pds_admin_password=generate_secret(PASSWORD_BITS),
        ozone_admin_password=generate_secret(PASSWORD_BITS),
        ozone_signing_key=generate_secret(KEY_BITS),
    )


def persist_config(config: DeploymentConfig, path: Path) -> None:
    """Write the deployment file with owner-only permissions."""
    atomic_write(Path(path), json.dumps(config.to_persisted(), indent=2) + "\n", mode=0o600)
    logger.info(f"Deployment secrets stored in {path}")


def load_config(path: Path) -> DeploymentConfig:
    """
    Read the deployment file written by the last run.

    Raises:
        FileNotFoundError: If no deployment has been run on this host
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"No deployment file at {path}; run 'atdeploy deploy' first")
    with open(path, "r") as f:
        return DeploymentConfig.model_validate(json.load(f))
