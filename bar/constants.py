import enum
import struct


class Revision(enum.Enum):
    """Header revisions. The two are mutually exclusive within one archive."""

    TIMESTAMPED = "timestamped"  # LASTUPDATE timestamps, no encryption
    ENCRYPTED = "encrypted"  # archive nonce counter + per-file ENC nonce


DEFAULT_REVISION = Revision.TIMESTAMPED


# Header field keys (small integers in place of field names)
KEY_NOTE = 0
KEY_NAME = 1
KEY_META = 2
KEY_FILE = 3
KEY_DIR = 4
KEY_OFFSET = 5
KEY_SIZE = 6
KEY_ENC = 7  # ENCRYPTED revision
KEY_LASTUPDATE = 7  # TIMESTAMPED revision
KEY_USED = 8
KEY_COMPRESSMETHOD = 9

META_KEYS = frozenset({KEY_NOTE, KEY_NAME, KEY_ENC, KEY_USED})
FILE_KEYS = frozenset({KEY_OFFSET, KEY_SIZE, KEY_META, KEY_COMPRESSMETHOD})

# Entry discriminator stored in front of every entry
ENTRY_IS_FILE = True
ENTRY_IS_DIR = False


# Trailer: u64 little endian length of the file-data section
TRAILER_STRUCT = struct.Struct("<Q")
TRAILER_SIZE = TRAILER_STRUCT.size

# Integer bounds
MAX_U32 = 0xFFFFFFFF
MAX_U64 = 0xFFFFFFFFFFFFFFFF
MAX_NONCE_COUNTER = (1 << 96) - 1
NONCE_COUNTER_SIZE = 12  # 96-bit counter persisted as big endian bytes
FILE_NONCE_SIZE = 8  # per-file 64-bit nonce
KDF_SALT_SIZE = 16

# Names are bounded to keep headers compact
MAX_NAME_BYTES = 255
ROOT_NAME = "/"

# Compression level per quality tier (monotonic: fast < medium < high)
QUALITY_LEVELS = {
    "fast": 1,
    "medium": 5,
    "high": 9,
}
ALGORITHMS = ("gzip", "deflate")
COMPRESS_NONE = "none"

# Sidecar file written next to unpacked archive contents
ROOT_METADATA_FILE = ".__barmeta.msgpack"

DEFAULT_JOBS = 1
