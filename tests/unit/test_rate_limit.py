"""
Rate Limit Key Unit Tests
"""

import pytest
from starlette.requests import Request

from core.security import create_access_token
from middleware.rate_limit import get_user_identifier

pytestmark = pytest.mark.unit


def make_request(headers=None):
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/api/v1/chat",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.7", 52100),
    })


class TestUserIdentifier:

    def test_bearer_token_subject(self, alice):
        token = create_access_token(data=alice)

        request = make_request({"Authorization": f"Bearer {token}"})

        assert get_user_identifier(request) == f"user:{alice['id']}"

    def test_falls_back_to_address(self):
        assert get_user_identifier(make_request()) == "ip:10.0.0.7"

    def test_garbage_token_uses_address(self):
        request = make_request({"Authorization": "Bearer not-a-jwt"})

        assert get_user_identifier(request) == "ip:10.0.0.7"
