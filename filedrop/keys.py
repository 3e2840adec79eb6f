import secrets
import string

KEY_NAMESPACE = "filedrop"
SHORT_CODE_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
SHORT_CODE_LENGTH = 6


def file_extension(filename: str) -> str:
    """Everything from the last dot onwards, or "" when there is no dot."""
    index = filename.rfind(".")
    if index == -1:
        return ""
    return filename[index:]


def derive_storage_key(file_id: str, filename: str) -> str:
    # The client's filename never reaches the bucket; only its extension does.
    return f"{KEY_NAMESPACE}/{file_id}{file_extension(filename)}"


def generate_short_code() -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))
