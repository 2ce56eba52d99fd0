"""
Views for authentication endpoints.

Token issuance is delegated to djangorestframework-simplejwt (see urls.py);
this module only adds the current-member endpoint.
"""

from drf_spectacular.utils import extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from authentication.serializers import UserSummarySerializer


class CurrentUserView(APIView):
    """Return the authenticated member's identity."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_current_user",
        summary="Current user",
        responses=UserSummarySerializer,
        tags=["Auth"],
    )
    def get(self, request):
        return Response(UserSummarySerializer(request.user).data)
