from passlib.context import CryptContext


class PasswordHasher:
    # Lower rounds (default 10) when CPU is tight; 12 is safer but ~4x slower
    def __init__(self, rounds: int = 10):
        self.pwd = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash_password(self, pw: str) -> str:
        return self.pwd.hash(pw)

    def verify_password(self, pw: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self.pwd.verify(pw, hashed)
        except ValueError:
            # stored value is not a bcrypt hash
            return False
