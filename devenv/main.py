"""
Entry point of the snapshot stager Job.

The whole configuration arrives as JSON in the CONFIG environment variable;
see StagerConfig.
"""

import asyncio
import logging
import os
import sys

from .config import get_settings
from .errors import DevenvError
from .services.orchestration.kubernetes.client import KubernetesClient
from .services.snapshot.models import StagerConfig
from .services.snapshot.stager import SnapshotStager

settings = get_settings()

logger = logging.getLogger(__name__)


async def run_stager(config: StagerConfig) -> None:
    k8s = KubernetesClient()
    stager = SnapshotStager.from_config(config, k8s, settings)
    await stager.run()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    raw = os.environ.get("CONFIG")
    if not raw:
        logger.error("CONFIG environment variable is not set")
        sys.exit(1)

    try:
        config = StagerConfig.from_json(raw)
        asyncio.run(run_stager(config))
    except (DevenvError, RuntimeError) as e:
        logger.error(f"Failed to stage snapshot: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
