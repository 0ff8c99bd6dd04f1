# Magic and version
FILE_MAGIC = b"LUSLSRL\x00"  # 8 bytes: "LUSLSRL\0"

VERSION_MAJOR = 1
VERSION_MINOR = 0
VERSION_PATCH = 0

# file_tags flag byte
FLAG_ENCRYPTED = 0x80
FLAG_COMPRESSED = 0x40
FLAG_RESERVED_MASK = 0xFF & ~(FLAG_ENCRYPTED | FLAG_COMPRESSED)

VARIANT_PLAIN = 0
VARIANT_ENCRYPTED = FLAG_ENCRYPTED
VARIANT_ENCRYPTED_COMPRESSED = FLAG_ENCRYPTED | FLAG_COMPRESSED
KNOWN_VARIANTS = (VARIANT_PLAIN, VARIANT_ENCRYPTED, VARIANT_ENCRYPTED_COMPRESSED)

# Fixed widths
CHECKSUM_SIZE = 16  # MD5
SIZE_FIELD_SIZE = 8  # u64
NONCE_SIZE = 24  # XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32

# Argon2id; the salt is fixed so a passphrase always re-derives the same key.
KDF_SALT = b"LUSL-archive-kdf"  # 16 bytes
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4

COMPRESSION_LEVEL = 9
READ_BUFFER_SIZE = 1_048_576  # 1 MiB
