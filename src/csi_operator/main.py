import kopf
import logging
import kubernetes
import os

from csi_operator import handlers
from csi_operator.config import OperatorConfig, load_config
from csi_operator.controller.reconciler import Reconciler
from csi_operator.crd.generator import CRDManager
from csi_operator.handlers.csi_handler import KopfEventRecorder, configure
from csi_operator.services.client import ClusterClient

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Set by main() before kopf starts, loaded from the environment otherwise
operator_config = None


@kopf.on.startup()
def startup_fn(settings: kopf.OperatorSettings, **kwargs):
    """Load cluster access and configuration, then wire the reconciler."""
    global operator_config

    logger.info("CSI Operator is starting up...")

    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()
        logger.info("Loaded local Kubernetes config")

    if should_manage_crds():
        if CRDManager().apply_crds_to_cluster():
            logger.info("CRDs applied to cluster successfully")
        else:
            logger.warning("No CRDs were applied to cluster")

    if operator_config is None:
        operator_config = load_config()

    client = ClusterClient()
    configure(Reconciler(client, operator_config, KopfEventRecorder()))

    settings.batching.worker_limit = int(os.getenv("WORKER_LIMIT", "5"))
    settings.posting.enabled = os.getenv("POSTING_ENABLED", "true").lower() == "true"
    settings.watching.server_timeout = int(os.getenv("SERVER_TIMEOUT", "60"))
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()

    logger.info(f"Registry domain: {operator_config.registry_domain}")
    logger.info(f"Kubelet root dir: {operator_config.kubelet_root_dir}")
    logger.info(f"Worker limit: {settings.batching.worker_limit}")
    logger.info(f"Posting enabled: {settings.posting.enabled}")
    logger.info("CSI Operator startup complete")


@kopf.on.cleanup()
def cleanup_fn(**kwargs):
    logger.info("CSI Operator is shutting down...")
    configure(None)
    logger.info("CSI Operator shutdown complete")


def should_manage_crds() -> bool:
    """Determine if operator should manage CRDs directly."""
    return os.getenv("MANAGE_CRDS", "true").lower() == "true"


def main(config: OperatorConfig = None):
    global operator_config
    operator_config = config

    logger.debug(f"Registered handler modules: {handlers.__all__}")
    try:
        kopf.run(clusterwide=True)
    except KeyboardInterrupt:
        logger.info("Operator stopped by user")
    except Exception as e:
        logger.error(f"Operator failed: {e}")
        raise


if __name__ == "__main__":
    main()
