"""
Password hashing with bcrypt.

A fixed work factor keeps every hash equally slow; bcrypt.checkpw compares in
constant time.
"""

import bcrypt

DEFAULT_ROUNDS = 10

# bcrypt only reads the first 72 bytes of its input
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """Salted one-way password hashing"""

    def __init__(self, rounds: int = DEFAULT_ROUNDS):
        self.rounds = rounds
        # Verified against when the identity is unknown, so that path costs
        # the same as a wrong password.
        self._dummy_hash = self.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False

    def dummy_verify(self, password: str) -> bool:
        self.verify(password, self._dummy_hash)
        return False
