# analytics/views.py
from __future__ import annotations

import datetime as dt
import logging
import re
import uuid

import pytz
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import ActionType, StudyEvent
from .serializers import StudyEventCreateSerializer, StudyEventSerializer
from .services import extract_keywords, get_user_stats, to_epoch_ms

logger = logging.getLogger(__name__)

_UNENCODED_OFFSET = re.compile(r" (\d{2}:?\d{2})$")

# Stored fields compared on replay, with the value used when the request omits them.
PAYLOAD_DEFAULTS = {
    "action_type": None,
    "timestamp": None,
    "text_length": 0,
    "topic_keywords": [],
    "quiz_total_questions": None,
    "quiz_correct_answers": None,
    "exam_score": None,
    "exam_total_marks": None,
    "exam_subject": None,
}


def _to_aware(dt_str: str | None) -> dt.datetime | None:
    """Parse an ISO string into a tz-aware (UTC) datetime; allow None."""
    if not dt_str:
        return None
    # Tolerate a space where '+hh:mm' should be (query string not URL-encoded).
    if "T" in dt_str:
        dt_str = _UNENCODED_OFFSET.sub(r"+\1", dt_str)
    d = parse_datetime(dt_str)
    if d is None:
        raise ValueError("invalid datetime format")
    if timezone.is_naive(d):
        d = timezone.make_aware(d, dt.timezone.utc)
    return d.astimezone(dt.timezone.utc)


def _same_payload(obj: StudyEvent, payload: dict) -> bool:
    return all(getattr(obj, name) == value for name, value in payload.items())


class EventCreateView(APIView):
    """POST /api/events (supports idempotency conflict 409)."""
    def post(self, request):
        serializer = StudyEventCreateSerializer(data=request.data or {})
        if not serializer.is_valid():
            return Response({'detail': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        data = dict(serializer.validated_data)
        user_id = data.pop('user_id')
        body_idem = data.pop('idempotency_key', None)
        idem = request.headers.get('Idempotency-Key') or body_idem or uuid.uuid4().hex
        text = data.pop('text', None)

        if text is not None:
            data.setdefault('text_length', len(text))
            data.setdefault('topic_keywords', extract_keywords(text))

        payload = {name: data.get(name, default) for name, default in PAYLOAD_DEFAULTS.items()}
        # A replay that omits timestamp is compared on everything else.
        timestamp_given = 'timestamp' in data
        if not timestamp_given:
            payload['timestamp'] = to_epoch_ms(timezone.now())
        compared = payload if timestamp_given else {k: v for k, v in payload.items() if k != 'timestamp'}

        try:
            with transaction.atomic():
                obj, created = StudyEvent.objects.get_or_create(
                    user_id=user_id,
                    idempotency_key=idem,
                    defaults=payload,
                )
        except IntegrityError:
            # Handle race: unique constraint hit, re-read and compare payload.
            obj = StudyEvent.objects.get(user_id=user_id, idempotency_key=idem)
            created = False

        if created:
            logger.info("event logged user=%s action=%s ts=%s", user_id, obj.action_type, obj.timestamp)
            status_code = status.HTTP_201_CREATED
        else:
            # Same idempotency key: accept only if payload is identical; otherwise 409.
            if not _same_payload(obj, compared):
                logger.warning("idempotency key reused with different payload user=%s key=%s", user_id, idem)
                return Response(
                    {'detail': 'Idempotency-Key reused with different payload.'},
                    status=status.HTTP_409_CONFLICT
                )
            status_code = status.HTTP_200_OK

        return Response(StudyEventSerializer(obj).data, status=status_code)


class UserEventListView(APIView):
    """
    GET /api/users/{user_id}/events
      &action_type=quiz_complete (optional)
    Returns the user's event log, oldest first.
    """
    def get(self, request, user_id: str):
        qs = StudyEvent.objects.filter(user_id=user_id).order_by('timestamp', 'created_at')
        action = request.query_params.get('action_type')
        if action:
            if action not in ActionType.values:
                return Response({'detail': 'invalid action_type.'}, status=400)
            qs = qs.filter(action_type=action)

        events = StudyEventSerializer(qs, many=True).data
        return Response({
            'user_id': user_id,
            'count': len(events),
            'events': events,
        }, status=status.HTTP_200_OK)


class UserStatsView(APIView):
    """
    GET /api/users/{user_id}/stats
      ?tz=Asia/Tokyo
      &now=ISO (optional, defaults to server time)
    Returns the derived stats snapshot; nothing is persisted.
    """
    def get(self, request, user_id: str):
        tzname = request.query_params.get('tz', 'UTC')
        try:
            pytz.timezone(tzname)
        except pytz.UnknownTimeZoneError:
            return Response({'detail': 'invalid tz.'}, status=400)

        try:
            now = _to_aware(request.query_params.get('now')) or timezone.now()
        except ValueError as e:
            return Response({'detail': str(e)}, status=400)

        stats = get_user_stats(user_id, now, tz=tzname)
        return Response({
            'user_id': user_id,
            'tz': tzname,
            'now': now.isoformat(),
            'stats': stats,
        }, status=status.HTTP_200_OK)
