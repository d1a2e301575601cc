"""Background workers shared by the application and the admin routes"""

from facebook.graph_client import GraphAPIClient, shared_stats
from intelligence.scheduler import IntelligenceScheduler
from services.queue_processor import QueueProcessor

queue_processor = QueueProcessor(graph_client=GraphAPIClient(stats=shared_stats))
intelligence_scheduler = IntelligenceScheduler(graph_client=GraphAPIClient(stats=shared_stats))
