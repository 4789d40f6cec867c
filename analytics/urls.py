from django.urls import path
from .views import EventCreateView, UserEventListView, UserStatsView

urlpatterns = [
    path("events", EventCreateView.as_view(), name="event-create"),
    path("users/<str:user_id>/events", UserEventListView.as_view(), name="user-events"),
    path("users/<str:user_id>/stats", UserStatsView.as_view(), name="user-stats"),
]
