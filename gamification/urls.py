from django.urls import path

from . import views

app_name = "gamification"

urlpatterns = [
    path("me/", views.my_stats, name="my_stats"),
    path("leaderboard/<str:category>/", views.leaderboard, name="leaderboard"),
]
