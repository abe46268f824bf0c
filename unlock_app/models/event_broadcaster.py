"""
Event Broadcaster - Server-Sent Events (SSE)
Handles real-time event broadcasting to connected clients
"""
import json
import queue
import threading
from datetime import datetime
from typing import Any, Dict, List


class EventBroadcaster:
    """Fans unlock events out to SSE client queues"""

    def __init__(self, logger=None, max_queue_size: int = 50):
        self.clients: List[queue.Queue] = []
        self.clients_lock = threading.Lock()
        self.logger = logger
        self.max_queue_size = max_queue_size

    def add_client(self) -> queue.Queue:
        client_queue = queue.Queue(maxsize=self.max_queue_size)

        with self.clients_lock:
            self.clients.append(client_queue)
            total = len(self.clients)

        if self.logger:
            self.logger.info(f"[SSE] New client connected. Total: {total}")

        return client_queue

    def remove_client(self, client_queue: queue.Queue):
        with self.clients_lock:
            if client_queue in self.clients:
                self.clients.remove(client_queue)
                if self.logger:
                    self.logger.info(f"[SSE] Client disconnected. Remaining: {len(self.clients)}")

    def broadcast_event(self, event_data: Dict[str, Any]):
        """
        Broadcast an event to all clients

        Args:
            event_data: Dictionary with
                - type: event type (e.g. 'unlock_finished')
                - data: event payload
                - timestamp: optional, added when missing
        """
        if 'timestamp' not in event_data:
            event_data['timestamp'] = datetime.now().isoformat()

        message = self.format_sse_message(event_data)

        disconnected_clients = []
        with self.clients_lock:
            for client_queue in self.clients:
                try:
                    client_queue.put_nowait(message)
                except queue.Full:
                    disconnected_clients.append(client_queue)
                    if self.logger:
                        self.logger.warning("[SSE] Client queue full, marking for removal")

        for client_queue in disconnected_clients:
            self.remove_client(client_queue)

        if self.logger:
            self.logger.debug(
                f"[SSE] Broadcast {event_data.get('type', 'unknown')} to {self.get_client_count()} clients"
            )

    @staticmethod
    def format_sse_message(event_data: Dict[str, Any]) -> str:
        """SSE format: event: type\\ndata: json\\n\\n"""
        event_type = event_data.get('type', 'message')
        return f"event: {event_type}\ndata: {json.dumps(event_data)}\n\n"

    def broadcast_unlock_finished(self, identity: str, result: Dict[str, Any]):
        self.broadcast_event({
            'type': 'unlock_finished',
            'data': {
                'identity': identity,
                'result': result,
            },
        })

    def get_client_count(self) -> int:
        with self.clients_lock:
            return len(self.clients)

    def cleanup(self):
        with self.clients_lock:
            self.clients.clear()

        if self.logger:
            self.logger.info("[SSE] All clients removed")
