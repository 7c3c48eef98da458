import hashlib
import re
from collections import namedtuple
from rest_framework import serializers


SEVERITIES = ('low', 'medium', 'high', 'critical')
ENVIRONMENTS = ('development', 'production')

TITLE_MAX_CHARS = 80

# applied in order: timestamps and hex before bare numbers
_UUID_RE = re.compile(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', re.I)
_TIMESTAMP_RE = re.compile(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?')
_HEX_RE = re.compile(r'\b[0-9a-f]{32,}\b', re.I)
_LONG_NUMBER_RE = re.compile(r'\b\d{5,}\b')
_WHITESPACE_RE = re.compile(r'\s+')

_FRAME_PATH_RE = re.compile(r'\(([^()]+?):\d+:\d+\)\s*$|^at\s+([^\s()]+?):\d+:\d+\s*$')
_VENDOR_MARKERS = ('node_modules', 'node:internal', '<anonymous>')

ErrorFingerprint = namedtuple(
    'ErrorFingerprint', ['fingerprint', 'title', 'normalized_message', 'top_frame']
)


class TelemetryErrorSerializer(serializers.Serializer):
    """Client-reported error event."""

    message = serializers.CharField(max_length=2000)
    name = serializers.CharField(max_length=200, required=False, default='Error')
    stack = serializers.CharField(max_length=20000, required=False, allow_blank=True)
    route = serializers.CharField(max_length=500, required=False, allow_blank=True)
    api_path = serializers.CharField(max_length=500, required=False, allow_blank=True)
    component = serializers.CharField(max_length=200, required=False, allow_blank=True)
    severity = serializers.ChoiceField(choices=SEVERITIES, required=False, default='medium')
    env = serializers.ChoiceField(choices=ENVIRONMENTS)
    session_id = serializers.CharField(max_length=128, required=False, allow_blank=True)
    user_id = serializers.CharField(max_length=128, required=False, allow_blank=True)
    meta = serializers.DictField(required=False, default=dict)

    def validate_message(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Message cannot be blank.")
        return value


def normalize_error_message(message):
    """
    Mask the dynamic parts of an error message so repeats group together.
    Numbers under 5 digits (status codes, step numbers) are kept.
    """
    message = _UUID_RE.sub('<UUID>', message or '')
    message = _TIMESTAMP_RE.sub('<TIMESTAMP>', message)
    message = _HEX_RE.sub('<HEX>', message)
    message = _LONG_NUMBER_RE.sub('<ID>', message)
    return _WHITESPACE_RE.sub(' ', message).strip()


def extract_top_stack_frame(stack):
    """First application frame's file path, or None."""
    if not stack:
        return None
    for line in stack.splitlines():
        line = line.strip()
        if not line.startswith('at '):
            continue
        if any(marker in line for marker in _VENDOR_MARKERS):
            continue
        match = _FRAME_PATH_RE.search(line)
        if not match:
            continue
        path = match.group(1) or match.group(2)
        idx = path.find('/src/')
        return path[idx:] if idx != -1 else path
    return None


def generate_fingerprint(data):
    """Stable 16-char id for an error, from name, normalized message, top frame and route."""
    name = data.get('name') or 'Error'
    normalized = normalize_error_message(data.get('message', ''))
    top_frame = extract_top_stack_frame(data.get('stack'))
    raw = '|'.join([name, normalized, top_frame or '', data.get('route') or ''])

    title = f"{name}: {normalized}"
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS - 3] + '...'

    return ErrorFingerprint(
        fingerprint=hashlib.sha256(raw.encode('utf-8')).hexdigest()[:16],
        title=title,
        normalized_message=normalized,
        top_frame=top_frame,
    )
