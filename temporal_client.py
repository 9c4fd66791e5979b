"""Temporal client factory.

Creates connections to Temporal (Cloud or a local dev server) using the
process settings.
"""

from typing import Optional

from temporalio.client import Client, TLSConfig

from core.config import SyncSettings, get_settings


async def get_temporal_client(settings: Optional[SyncSettings] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from settings (environment):
    - TEMPORAL_ENDPOINT: Temporal endpoint (e.g., "temporal.example.com:7233", "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (omit for a local server)
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If TEMPORAL_ENDPOINT is not set
    """
    settings = settings or get_settings()
    endpoint = settings.temporal_endpoint

    if not endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233')"
        )

    # Local dev server: plaintext, no credentials
    if not settings.temporal_api_key and not settings.temporal_cert_path:
        return await Client.connect(endpoint, namespace=settings.temporal_namespace)

    tls = True
    if settings.temporal_cert_path:
        with open(settings.temporal_cert_path, "rb") as f:
            cert = f.read()
        tls = TLSConfig(client_cert=cert, client_private_key=cert)

    return await Client.connect(
        endpoint,
        namespace=settings.temporal_namespace,
        tls=tls,
        api_key=settings.temporal_api_key,
    )
