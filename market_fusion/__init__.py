"""Market Signal Fusion Engine.

Fuses per-exchange derivatives snapshots and trade streams into flow
confluence, composite bias and graded signal outcomes.

Usage:
    from market_fusion import FusionConfig, FusionEngine

    async def main():
        async with FusionEngine(FusionConfig(instruments=["BTC"])) as engine:
            ...
"""

from .continuous.orchestrator import FusionEngine, FusionSnapshot
from .engines.fusion_config import BiasWeights, FusionConfig
from .errors import ConfigError, FusionError, InvalidInputError, PersistenceError

__version__ = "0.1.0"

__all__ = [
    "BiasWeights",
    "ConfigError",
    "FusionConfig",
    "FusionEngine",
    "FusionError",
    "FusionSnapshot",
    "InvalidInputError",
    "PersistenceError",
    "__version__",
]
