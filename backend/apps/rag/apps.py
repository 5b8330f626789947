import logging

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class RagConfig(AppConfig):
    name = 'apps.rag'
    verbose_name = 'Retrieval Augmented Chat'

    def ready(self):
        if getattr(settings, 'EMBEDDING_PRELOAD', False) and getattr(settings, 'EMBEDDING_MODE', 'local') == 'local':
            from apps.rag.embeddings import get_embedder

            logger.info("Preloading embedding model in the background")
            get_embedder().start_background_load()
