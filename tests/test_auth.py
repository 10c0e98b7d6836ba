from __future__ import annotations

import unittest
from unittest import mock

from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from cheffy.auth import get_current_principal
from cheffy.config import Settings

SECRET = "test-secret"


def _creds(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class AuthTestCase(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch(
            "cheffy.auth.get_settings",
            return_value=Settings(auth_jwt_secret=SECRET, auth_audience="cheffy"),
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_valid_token_yields_principal(self):
        token = jwt.encode({"sub": "user-1", "email": "cook@example.com", "aud": "cheffy"}, SECRET, algorithm="HS256")
        principal = get_current_principal(_creds(token))
        self.assertEqual(principal["sub"], "user-1")
        self.assertEqual(principal["email"], "cook@example.com")

    def test_wrong_secret_is_rejected(self):
        token = jwt.encode({"sub": "user-1", "aud": "cheffy"}, "other-secret", algorithm="HS256")
        with self.assertRaises(HTTPException) as ctx:
            get_current_principal(_creds(token))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_wrong_audience_is_rejected(self):
        token = jwt.encode({"sub": "user-1", "aud": "someone-else"}, SECRET, algorithm="HS256")
        with self.assertRaises(HTTPException):
            get_current_principal(_creds(token))

    def test_token_without_subject_is_rejected(self):
        token = jwt.encode({"aud": "cheffy"}, SECRET, algorithm="HS256")
        with self.assertRaises(HTTPException) as ctx:
            get_current_principal(_creds(token))
        self.assertEqual(ctx.exception.detail, "Invalid token: no sub")

    def test_missing_credentials_are_rejected(self):
        with self.assertRaises(HTTPException) as ctx:
            get_current_principal(None)
        self.assertEqual(ctx.exception.status_code, 401)
