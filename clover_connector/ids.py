# Ids - correlation id generation
# Crockford base32, 13 characters; random, so uniqueness is likely but not guaranteed

import secrets

BASE_32_DIGITS = '0123456789ABCDEFGHJKMNPQRSTVWXYZ'
ID_LENGTH = 13
MAX_EXTERNAL_ID_LENGTH = 32


def new_id(length: int = ID_LENGTH) -> str:
    """Generate a new random id"""
    return ''.join(secrets.choice(BASE_32_DIGITS) for _ in range(length))
