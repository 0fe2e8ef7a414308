import asyncio
import logging
import signal

from .backend import SageMakerBackend
from .config import get_settings
from .controller import TrainingJobController
from .kubernetes import get_k8s_client

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_controller() -> None:
    controller = TrainingJobController(
        k8s_client=get_k8s_client(),
        backend=SageMakerBackend(settings),
        settings=settings,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await controller.run()


def main() -> None:
    logger.info(f"Starting SageMaker TrainingJob controller (namespace: {settings.watch_namespace or 'all'})")
    asyncio.run(run_controller())


if __name__ == "__main__":
    main()
