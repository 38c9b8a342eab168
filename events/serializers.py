from rest_framework import serializers


class EventPullSerializer(serializers.Serializer):
    cursor = serializers.IntegerField(min_value=0, default=0)
    limit = serializers.IntegerField(min_value=1, max_value=1000, default=200)
    name = serializers.CharField(required=False, allow_blank=True)
