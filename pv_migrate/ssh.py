import base64
import secrets
import struct

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from pv_migrate.errors import PvMigrateError

RSA_KEY_ALGORITHM = "rsa"
ED25519_KEY_ALGORITHM = "ed25519"
KEY_ALGORITHMS = [RSA_KEY_ALGORITHM, ED25519_KEY_ALGORITHM]

RSA_KEY_BITS = 2048
RSA_PUBLIC_EXPONENT = 65537

OPENSSH_MAGIC = b"openssh-key-v1\x00"
OPENSSH_BLOCK_SIZE = 8
ED25519_KEY_TYPE = b"ssh-ed25519"
PEM_LINE_LENGTH = 64


def create_ssh_key_pair(key_algorithm):
    """
    Generate a key pair and return ``(public_key, private_key)``.

    The public key is a single authorized_keys line ending in a newline, the
    private key is PEM text: ``RSA PRIVATE KEY`` for rsa and
    ``OPENSSH PRIVATE KEY`` for ed25519.
    """
    if key_algorithm == RSA_KEY_ALGORITHM:
        return _create_rsa_key_pair()
    if key_algorithm == ED25519_KEY_ALGORITHM:
        return _create_ed25519_key_pair()
    raise PvMigrateError(f"unsupported key algorithm: {key_algorithm}")


def private_key_mount_path(key_algorithm):
    return f"/tmp/id_{key_algorithm}"


def _authorized_key(public_key):
    line = public_key.public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    )
    return line.decode() + "\n"


def _create_rsa_key_pair():
    key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_BITS)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return _authorized_key(key.public_key()), private_pem.decode()


def _create_ed25519_key_pair():
    key = ed25519.Ed25519PrivateKey.generate()
    blob = marshal_ed25519_private_key(key)
    return _authorized_key(key.public_key()), _pem_encode("OPENSSH PRIVATE KEY", blob)


# -----------------------------------------------------------------------------
# openssh-key-v1 framing
# -----------------------------------------------------------------------------
def _ssh_string(data):
    return struct.pack(">I", len(data)) + data


def _ssh_uint32(value):
    return struct.pack(">I", value)


def marshal_ed25519_private_key(key):
    """
    Frame an ed25519 key as an unencrypted openssh-key-v1 blob.

    The private section holds two equal random check ints, the key type, the
    32 byte public key, the 64 byte private key (seed followed by public key),
    an empty comment and the 1, 2, 3, ... padding up to the cipher block size.
    """
    pub = key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    seed = key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )

    check = secrets.randbits(32)
    block = (
        _ssh_uint32(check)
        + _ssh_uint32(check)
        + _ssh_string(ED25519_KEY_TYPE)
        + _ssh_string(pub)
        + _ssh_string(seed + pub)
        + _ssh_string(b"")
    )
    pad_len = (OPENSSH_BLOCK_SIZE - len(block) % OPENSSH_BLOCK_SIZE) % OPENSSH_BLOCK_SIZE
    block += bytes(range(1, pad_len + 1))

    public_blob = _ssh_string(ED25519_KEY_TYPE) + _ssh_string(pub)

    return (
        OPENSSH_MAGIC
        + _ssh_string(b"none")
        + _ssh_string(b"none")
        + _ssh_string(b"")
        + _ssh_uint32(1)
        + _ssh_string(public_blob)
        + _ssh_string(block)
    )


def _pem_encode(label, data):
    encoded = base64.b64encode(data).decode()
    lines = [encoded[i:i + PEM_LINE_LENGTH] for i in range(0, len(encoded), PEM_LINE_LENGTH)]
    body = "\n".join(lines)
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n"
