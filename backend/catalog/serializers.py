from rest_framework import serializers
from contracts.models import FileEntry


class FileEntrySerializer(serializers.ModelSerializer):
    """
    Serializer for FileEntry.

    Everything except the display name is read-only here; visibility and
    download counts change through their own service calls.
    """
    content_hash = serializers.CharField(source='content_id', read_only=True)
    owner = serializers.IntegerField(source='owner_id', read_only=True)
    public_url = serializers.SerializerMethodField()

    class Meta:
        model = FileEntry
        fields = [
            'id',
            'display_name',
            'original_size',
            'mime_type',
            'uploaded_at',
            'owner',
            'content_hash',
            'is_public',
            'public_link',
            'public_url',
            'download_count',
            'version',
        ]
        read_only_fields = [
            'id',
            'original_size',
            'mime_type',
            'uploaded_at',
            'owner',
            'content_hash',
            'is_public',
            'public_link',
            'public_url',
            'download_count',
            'version',
        ]

    def get_public_url(self, obj):
        if not obj.public_link:
            return None
        path = f'/api/public/{obj.public_link}/'
        request = self.context.get('request')
        return request.build_absolute_uri(path) if request else path


class UploadResultSerializer(FileEntrySerializer):
    """Upload response, flagging whether the bytes were already stored."""
    is_duplicate = serializers.SerializerMethodField()

    class Meta(FileEntrySerializer.Meta):
        fields = FileEntrySerializer.Meta.fields + ['is_duplicate']

    def get_is_duplicate(self, obj):
        return self.context.get('is_duplicate', False)


class RenameSerializer(serializers.Serializer):
    display_name = serializers.CharField(max_length=255)
    version = serializers.IntegerField(required=False, min_value=1)


class VisibilitySerializer(serializers.Serializer):
    is_public = serializers.BooleanField()
    version = serializers.IntegerField(required=False, min_value=1)


class VersionSerializer(serializers.Serializer):
    version = serializers.IntegerField(required=False, min_value=1)


class AggregateStatsSerializer(serializers.Serializer):
    """Serializer for storage statistics."""
    scope = serializers.CharField(required=False)
    original_total = serializers.IntegerField()
    deduped_total = serializers.IntegerField()
    savings = serializers.IntegerField()
    entry_count = serializers.IntegerField()
    unique_contents = serializers.IntegerField()
    duplicate_count = serializers.IntegerField()
    savings_percent = serializers.FloatField()
    deduplication_ratio = serializers.FloatField()
    timestamp = serializers.DateTimeField()
