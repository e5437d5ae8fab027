"""
mediaseal — encrypted, content-addressed media uploads to Filecoin.

Architecture:
    Container:  [keyLen][wrappedKey][digestLen][digest][algo][nonceLen][nonce][payloadLen][payload]
    Storage:    piece uploaded through a storage provider, served by a gateway
    Registry:   (contentId, pieceId) anchored on-chain by a remote signer
    Access:     AES key wrapped by a threshold key service under an access policy
"""

__version__ = "0.1.0"

# Container algorithm tags
ALGO_PLAINTEXT = 0  # registration metadata only, never in a header
ALGO_AES_GCM_256 = 1
SUPPORTED_ALGORITHMS = frozenset({ALGO_AES_GCM_256})

# AES-256-GCM parameters
SEAL_KEY_SIZE = 32
SEAL_NONCE_SIZE = 12
SEAL_TAG_SIZE = 16

# Upload pipeline policy
UPLOAD_MAX_ATTEMPTS = 3  # provider-exclusion retries for fresh datasets
UPLOAD_TIMEOUT_SECS = 15 * 60
REGISTER_TIMEOUT_SECS = 2 * 60
FETCH_TIMEOUT_SECS = 60
DEFAULT_MIN_DEPOSIT = 10**18  # 1 USDFC (18 decimals)

# Gateway
FILBEAM_HOST_MAINNET = "filbeam.io"
FILBEAM_HOST_CALIBRATION = "calibration.filbeam.io"
DEFAULT_GATEWAY_URL = "https://gateway.s3-node-1.load.network"
NATIVE_PIECE_PREFIXES = ("baga", "bafy", "Qm")

# Local state
DEFAULT_DATA_DIR = "~/.mediaseal"
