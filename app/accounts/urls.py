"""
URL routes for API authentication.

Routes (prefixed with /api/v1/auth/):
    token/          POST  Obtain JWT access/refresh pair (email + password)
    token/refresh/  POST  Exchange a refresh token for a new access token
"""

from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

app_name = "accounts"

urlpatterns = [
    path("token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
]
