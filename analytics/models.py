import uuid

from django.db import models


class ActionType(models.TextChoices):
    CREATE_SESSION = "create_session", "Create session"
    EXPLAIN = "explain", "Explain"
    SUMMARIZE = "summarize", "Summarize"
    QUIZ = "quiz", "Quiz generated"
    FLASHCARDS = "flashcards", "Flashcards"
    CHAT = "chat", "Chat"
    QUIZ_COMPLETE = "quiz_complete", "Quiz completed"
    EXAM_COMPLETE = "exam_complete", "Exam completed"


class StudyEvent(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=64, db_index=True)        # User identifier
    idempotency_key = models.CharField(max_length=64)               # Idempotency key (unique per user)
    action_type = models.CharField(max_length=32, choices=ActionType.choices)
    timestamp = models.BigIntegerField()                            # Occurrence time, epoch milliseconds
    text_length = models.PositiveIntegerField(default=0)            # Length of the triggering text
    topic_keywords = models.JSONField(default=list, blank=True)     # Up to 5 lowercase keywords

    # quiz_complete only
    quiz_total_questions = models.PositiveIntegerField(null=True, blank=True)
    quiz_correct_answers = models.PositiveIntegerField(null=True, blank=True)

    # exam_complete only
    exam_score = models.FloatField(null=True, blank=True)
    exam_total_marks = models.FloatField(null=True, blank=True)
    exam_subject = models.CharField(max_length=128, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)            # Record creation time (server-side)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user_id", "idempotency_key"],
                                    name="uq_event_user_idempotency"),
        ]
        indexes = [
            models.Index(fields=["user_id", "timestamp"], name="idx_event_user_ts"),
        ]
        ordering = ["timestamp"]

    def __str__(self):
        return f"{self.user_id}:{self.action_type}@{self.timestamp}"
