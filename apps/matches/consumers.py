"""Heartbeat ingestion for the real-time transport.

Clients keep a socket open for the duration of a match and send
``{"action": "ping"}`` every few seconds. Each ping refreshes the player's
last-ping column, which the disconnect monitor reads.
"""
import json
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer
from django.utils import timezone

from .models import Match
from .services import record_heartbeat

logger = logging.getLogger(__name__)


class HeartbeatConsumer(AsyncWebsocketConsumer):
    async def connect(self):
        self.match_id = self.scope['url_route']['kwargs']['match_id']
        self.user = self.scope['user']

        if self.user.is_anonymous:
            await self.close()
            return

        if not await self.is_participant():
            await self.close()
            return

        await self.accept()
        await self.ping()
        logger.info('Heartbeat WS connected: user=%s match=%s', self.user.username, self.match_id)

    async def disconnect(self, close_code):
        logger.info('Heartbeat WS disconnected: user=%s match=%s', getattr(self, 'user', None), self.match_id)

    async def receive(self, text_data):
        try:
            data = json.loads(text_data)
        except json.JSONDecodeError:
            return

        if data.get('action') == 'ping':
            accepted = await self.ping()
            await self.send(text_data=json.dumps({
                'type': 'pong',
                'accepted': accepted,
                'server_time': timezone.now().isoformat(),
            }))

    @database_sync_to_async
    def is_participant(self):
        match = Match.objects.filter(pk=self.match_id).first()
        return match is not None and match.is_participant(self.user.pk)

    @database_sync_to_async
    def ping(self):
        return record_heartbeat(int(self.match_id), self.user.pk)
