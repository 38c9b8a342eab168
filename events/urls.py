from django.urls import path

from events.views import EventPullView

urlpatterns = [
    path("pull", EventPullView.as_view(), name="events-pull"),
]
