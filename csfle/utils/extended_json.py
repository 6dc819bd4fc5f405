"""MongoDB Extended JSON conversion for API payloads"""

import json
from typing import Any

from bson import json_util
from bson.binary import UuidRepresentation

JSON_OPTIONS = json_util.RELAXED_JSON_OPTIONS.with_options(
    uuid_representation=UuidRepresentation.STANDARD
)


def from_json(data: Any) -> Any:
    """Parse already-decoded JSON into BSON-aware Python values"""
    return json_util.loads(json.dumps(data), json_options=JSON_OPTIONS)


def to_json(value: Any) -> Any:
    """Render BSON values (Binary, UUID, datetime...) as plain JSON data"""
    return json.loads(json_util.dumps(value, json_options=JSON_OPTIONS))
