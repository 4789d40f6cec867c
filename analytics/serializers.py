# analytics/serializers.py
import datetime as dt

from rest_framework import serializers

from .models import ActionType, StudyEvent

MAX_TIMESTAMP_MS = 253402300799999


class StudyEventCreateSerializer(serializers.ModelSerializer):
    """
    Serializer for appending a StudyEvent.
    Notes:
      - idempotency_key can be passed via Header (handled in the view); not required in the body.
      - timestamp is optional; the view defaults it to server time.
      - text is write-only: when given, text_length and topic_keywords are derived from it.
      - quiz_* fields are only accepted on quiz_complete, exam_* fields only on exam_complete.
    """
    idempotency_key = serializers.CharField(
        required=False, allow_blank=False, max_length=64
    )
    action_type = serializers.ChoiceField(choices=ActionType.choices)
    # epoch milliseconds, up to 9999-12-31T23:59:59.999Z
    timestamp = serializers.IntegerField(required=False, min_value=0, max_value=MAX_TIMESTAMP_MS)
    text = serializers.CharField(required=False, allow_blank=True, write_only=True, trim_whitespace=False)
    text_length = serializers.IntegerField(required=False, min_value=0)
    topic_keywords = serializers.ListField(
        child=serializers.CharField(max_length=64), required=False, max_length=5
    )
    quiz_total_questions = serializers.IntegerField(required=False, allow_null=True, min_value=0)
    quiz_correct_answers = serializers.IntegerField(required=False, allow_null=True, min_value=0)
    exam_score = serializers.FloatField(required=False, allow_null=True, min_value=0)
    exam_total_marks = serializers.FloatField(required=False, allow_null=True, min_value=0)

    class Meta:
        model = StudyEvent
        fields = (
            "user_id",
            "idempotency_key",
            "action_type",
            "timestamp",
            "text",
            "text_length",
            "topic_keywords",
            "quiz_total_questions",
            "quiz_correct_answers",
            "exam_score",
            "exam_total_marks",
            "exam_subject",
        )
        # Reused keys are resolved by the view (replay or 409), not rejected here.
        validators = []

    def validate_topic_keywords(self, v):
        out = []
        for keyword in v:
            k = keyword.strip().lower()
            if k and k not in out:
                out.append(k)
        return out

    def validate(self, attrs):
        action = attrs.get("action_type")
        quiz_fields = ("quiz_total_questions", "quiz_correct_answers")
        exam_fields = ("exam_score", "exam_total_marks", "exam_subject")
        if action != ActionType.QUIZ_COMPLETE and any(attrs.get(f) is not None for f in quiz_fields):
            raise serializers.ValidationError("quiz_* fields are only allowed on quiz_complete.")
        if action != ActionType.EXAM_COMPLETE and any(attrs.get(f) is not None for f in exam_fields):
            raise serializers.ValidationError("exam_* fields are only allowed on exam_complete.")
        total = attrs.get("quiz_total_questions")
        correct = attrs.get("quiz_correct_answers")
        if total is not None and correct is not None and correct > total:
            raise serializers.ValidationError("quiz_correct_answers must be <= quiz_total_questions.")
        return attrs


class StudyEventSerializer(serializers.ModelSerializer):
    """Read-only snapshot of a stored StudyEvent."""
    occurred_at = serializers.SerializerMethodField()

    class Meta:
        model = StudyEvent
        fields = (
            "id",
            "user_id",
            "idempotency_key",
            "action_type",
            "timestamp",
            "occurred_at",
            "text_length",
            "topic_keywords",
            "quiz_total_questions",
            "quiz_correct_answers",
            "exam_score",
            "exam_total_marks",
            "exam_subject",
            "created_at",
        )
        read_only_fields = fields

    def get_occurred_at(self, obj) -> str | None:
        try:
            d = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc) + dt.timedelta(milliseconds=obj.timestamp)
        except OverflowError:
            # Rows written before the max_value bound existed.
            return None
        return d.isoformat()
