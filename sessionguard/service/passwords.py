"""Password hashing, verification and policy.

Hashes are Argon2id in the PHC string format::

    $argon2id$v=19$m=65536,t=3,p=4$<salt>$<hash>

with salt and hash encoded as unpadded standard base64.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.service.errors import InvalidEmail, MalformedHash, PolicyViolation

ARGON2_MEMORY_KIB = 64 * 1024
ARGON2_ITERATIONS = 3
ARGON2_PARALLELISM = 4
ARGON2_SALT_LEN = 16
ARGON2_HASH_LEN = 32
ARGON2_VERSION = 19

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 1000
MAX_EMAIL_LENGTH = 255

# Strong-looking passwords seen in credential-stuffing lists; stored lowercased
COMMON_PASSWORDS = frozenset(
    p.lower()
    for p in (
        "Password1!", "Password1@", "Password1#", "Password1$", "Password12!",
        "Password123!", "Welcome1!", "Welcome123!", "Welcome2024!", "Welcome2025!",
        "Qwerty123!", "Qwerty123@", "Qwerty123#", "Qwerty123$", "Qwerty12!",
        "Admin123!", "Admin123@", "Admin123#", "Admin123$", "Letmein1!",
        "Letmein123!", "Letmein123@", "Iloveyou1!", "Iloveyou123!", "Monk3y123!",
        "Dragon123!", "Princess1!", "Sunshine1!", "Football1!", "Baseball1!",
        "Starwars1!", "Trustno1!", "Shadow123!", "Master123!", "Login123!",
        "Passw0rd1!", "Passw0rd1@", "Passw0rd1#", "C0mputer1!", "C0mputer123!",
        "N1nja123!", "N1nja2024!", "S0ccer123!", "Hockey123!", "P@ssw0rd1",
        "P@ssword1", "P@ssword1!", "P@ssword123!", "Ch@ngeMe1!", "Default1!",
        "TempPass1!", "TempPass2@", "Test1234!", "Test12345!", "Welcome12!",
        "Welcome1234!", "Qwerty12@", "Qwerty1234!", "Admin2024!", "Admin2025!",
        "User1234!", "User12345!", "User2024!", "User2025!",
    )
)

_ENCODED_HASH = re.compile(
    r"^\$argon2id\$v=(?P<version>\d+)"
    r"\$m=(?P<m>\d+),t=(?P<t>\d+),p=(?P<p>\d+)"
    r"\$(?P<salt>[A-Za-z0-9+/]+)\$(?P<hash>[A-Za-z0-9+/]+)$"
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(raw: str) -> str:
    """Trim and lowercase an address, rejecting anything that is not a single mailbox."""
    if not isinstance(raw, str):
        raise InvalidEmail()
    email = raw.strip().lower()
    if not email or len(email) > MAX_EMAIL_LENGTH:
        raise InvalidEmail()
    local, sep, domain = email.rpartition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise InvalidEmail()
    if not _EMAIL_LOCAL_PART.match(local) or local.startswith(".") or local.endswith("."):
        raise InvalidEmail()
    if ".." in local:
        raise InvalidEmail()
    labels = domain.split(".")
    if len(labels) < 2:
        raise InvalidEmail()
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidEmail()
    return email


def validate_password(raw: str) -> None:
    """Raise PolicyViolation for the first rule the password breaks."""
    if len(raw) < MIN_PASSWORD_LENGTH:
        raise PolicyViolation(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(raw) > MAX_PASSWORD_LENGTH:
        raise PolicyViolation(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any("A" <= c <= "Z" for c in raw):
        raise PolicyViolation("password must include an uppercase letter")
    if not any("0" <= c <= "9" for c in raw):
        raise PolicyViolation("password must include a number")
    if all(c.isascii() and c.isalnum() for c in raw):
        raise PolicyViolation("password must include a special character")
    if raw.lower() in COMMON_PASSWORDS:
        raise PolicyViolation("password is too common")


class PasswordEngine:
    """Argon2id hashing with fixed cost parameters."""

    def __init__(
        self,
        *,
        memory_cost: int = ARGON2_MEMORY_KIB,
        time_cost: int = ARGON2_ITERATIONS,
        parallelism: int = ARGON2_PARALLELISM,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=ARGON2_HASH_LEN,
            salt_len=ARGON2_SALT_LEN,
            type=Type.ID,
        )

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, encoded: str) -> bool:
        """Recompute with the parameters embedded in ``encoded``.

        Raises:
            MalformedHash: if ``encoded`` is not a well-formed argon2id hash
        """
        _decode(encoded)
        try:
            return self._hasher.verify(encoded, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            raise MalformedHash(str(exc)) from exc
        except VerificationError:
            return False

    def fake_hash(self, plaintext: str) -> None:
        """Spend one hash computation so failure paths cost the same as a verify."""
        self._hasher.hash(plaintext)


def _decode(encoded: str) -> dict:
    match = _ENCODED_HASH.match(encoded or "")
    if not match:
        raise MalformedHash("invalid argon2id hash format")
    if int(match["version"]) != ARGON2_VERSION:
        raise MalformedHash("unsupported argon2 version")
    params = {key: int(match[key]) for key in ("m", "t", "p")}
    if any(value <= 0 for value in params.values()):
        raise MalformedHash("invalid argon2id parameters")
    for part in ("salt", "hash"):
        try:
            base64.b64decode(match[part] + "=" * (-len(match[part]) % 4), validate=True)
        except ValueError as exc:
            raise MalformedHash(f"invalid argon2id {part} encoding") from exc
    return params


def generate_token(nbytes: int = 32) -> str:
    """Random token encoded as unpadded base64url."""
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).rstrip(b"=").decode("ascii")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


_default_engine: PasswordEngine | None = None


def _engine() -> PasswordEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = PasswordEngine()
    return _default_engine


def hash_password(plaintext: str) -> str:
    return _engine().hash_password(plaintext)


def verify_password(plaintext: str, encoded: str) -> bool:
    return _engine().verify_password(plaintext, encoded)


def fake_hash(plaintext: str) -> None:
    _engine().fake_hash(plaintext)
