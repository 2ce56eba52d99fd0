"""
Serializers for authentication models.

- UserSummarySerializer: the compact identity embedded in chat payloads
  (participants, message senders) and returned by /auth/me/.
"""

from rest_framework import serializers

from authentication.models import User


class UserSummarySerializer(serializers.ModelSerializer):
    """
    Compact, read-only view of a member.

    Carries exactly what a client needs to render a sender or participant
    without another round trip.
    """

    name = serializers.CharField(source="get_full_name", read_only=True)
    avatar_url = serializers.CharField(read_only=True)

    class Meta:
        model = User
        fields = ["id", "email", "name", "avatar_url"]
        read_only_fields = fields
