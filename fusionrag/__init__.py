from .fusionrag import FusionRAG as FusionRAG, QueryParam as QueryParam
from .services import (
    BaseEmbeddingService as BaseEmbeddingService,
    BaseLLMService as BaseLLMService,
    BaseRerankService as BaseRerankService,
)

__version__ = "0.1.0"
__author__ = "FusionRAG contributors"
