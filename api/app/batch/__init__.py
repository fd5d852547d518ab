from .dispatcher import ACTIONS, BatchDispatcher, pool_config_from_settings  # noqa: F401
from .gateway import ClassifierGateway  # noqa: F401
from .worker_pool import PoolConfig, WorkerPool  # noqa: F401
