DEPLOY_SAFE_VERSION = "1.4.1"

# Safe v1.4.1 canonical addresses
DEFAULT_FALLBACK_ADDRESS = "0xfd0732Dc9E303f09fCEf3a7388Ad10A83459Ec99"
DEFAULT_PROXYFACTORY_ADDRESS = "0x4e1DCf7AD4e460CfD30791CCC4F9c8a4f820ec67"
DEFAULT_SAFEL2_SINGLETON_ADDRESS = "0x29fcB43b46531BcA003ddC8FCB67FFE91900C762"
DEFAULT_SAFE_SINGLETON_ADDRESS = "0x41675C099F32341bf84BFc5382aF534df5C7461a"

# Safe v1.4.1 setup() function
# setup(address[],uint256,address,bytes,address,address,uint256,address)
SAFE_SETUP_FUNC_SELECTOR = "0xb63e800d"
SAFE_SETUP_FUNC_TYPES = (
    "address[]",
    "uint256",
    "address",
    "bytes",
    "address",
    "address",
    "uint256",
    "address",
)

# SafeProxyFactory v1.4.1
CREATE_PROXY_FUNC = "createProxyWithNonce(address,bytes,uint256)"
CREATE_CHAIN_SPECIFIC_PROXY_FUNC = (
    "createChainSpecificProxyWithNonce(address,bytes,uint256)"
)
SAFE_GET_OWNERS_FUNC = "getOwners()"
SAFE_GET_THRESHOLD_FUNC = "getThreshold()"
SAFE_IS_OWNER_FUNC = "isOwner(address)"

# Ownable contracts handed over to a Safe after deployment
TRANSFER_OWNERSHIP_FUNC = "transferOwnership(address)"

# CREATE2Factory interface
FACTORY_DEPLOY_FUNC = "deployWithConstructor(bytes,bytes32)"
FACTORY_SALT_USED_FUNC = "saltUsed(bytes32)"

# Deterministic deployment proxy, present at the same address on most EVM
# chains. Calldata is salt (32 bytes) followed by the creation code.
DETERMINISTIC_DEPLOYER_ADDRESS = "0x4e59b44847b379578588920cA78FbF26c0B4956C"

# Chain ID mixed into salts of deployments that must converge on one address
# across every chain.
UNIVERSAL_CHAIN_ID = 0

DEFAULT_DERIVATION_PATH = "m/44'/60'/0'/0/0"
DEFAULT_DEPLOYMENTS_DIR = "deployments"
DEPLOYMENT_RECORD_PREFIX = "create2-"
MULTISIG_RECORD_PREFIX = "multisig-level"

SYMBOL_CAUTION = "⚠"
SYMBOL_CHECK = "✔"
SYMBOL_CROSS = "✖"
SYMBOL_WARNING = "⚠️"
