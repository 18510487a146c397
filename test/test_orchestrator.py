import os

import pytest
from eth_utils.crypto import keccak
from hexbytes import HexBytes

from xdeploy.create2 import derive_salt, predict_address, predict_factory_address
from xdeploy.exceptions import ConfigurationError, InvalidCreationCode, UserRejected
from xdeploy.ledger import Create2Factory, DeploymentLedger
from xdeploy.models import ConfigCall, DeploymentConfig, RoleSpec, RoleStatus
from xdeploy.orchestrator import (
    DeploymentOrchestrator,
    factory_salt,
    plan_roles,
    resolve_factory_address,
)
from xdeploy.records import load_record

from conftest import FACTORY_CODE, FakeChain, runtime_code

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BRIDGE = "0x3154Cf16ccdb4C6d922629664174b904d80F2C35"

TREASURY_CODE = HexBytes(b"\x60\x80treasury")
ROUTER_CODE = HexBytes(b"\x60\x80router")
FEE_COLLECTOR_CODE = HexBytes(b"\x60\x80feeCollector")

ROUTER_CALLS = (
    ConfigCall(
        setter="setSupportedToken(address,bool)",
        args=(USDC, True),
        getter="supportedTokens(address)",
        getter_args=(USDC,),
        expected=True,
        description="support USDC",
    ),
    ConfigCall(
        setter="setApprovedBridge(address,bool)",
        args=(BRIDGE, True),
        getter="approvedBridges(address)",
        getter_args=(BRIDGE,),
        expected=True,
    ),
)


def make_config(tmp_path, factory, **overrides) -> DeploymentConfig:
    kwargs = dict(
        network="base",
        namespace="402.vln.gg-v1",
        nonce=0,
        roles=(
            RoleSpec(
                name="treasury",
                creation_code=TREASURY_CODE,
                metadata={"owner": "0x" + "aa" * 20},
            ),
            RoleSpec(name="router", creation_code=ROUTER_CODE, calls=ROUTER_CALLS),
            RoleSpec(
                name="feeCollector",
                creation_code=FEE_COLLECTOR_CODE,
                metadata={"feeRate": 50},
            ),
        ),
        factory=factory,
        auxiliary={"tokens": {"USDC": USDC}},
        output_dir=str(tmp_path),
    )
    kwargs.update(overrides)
    return DeploymentConfig(**kwargs)


def fail_on_code(code: bytes):
    def predicate(to: str, data: bytes) -> bool:
        return bytes(code) in data

    return predicate


def test_full_deployment(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()

    assert record.complete
    assert record.failures == {}
    assert record.network == "base"
    assert record.chain_id == chain.chain_id
    assert record.deployer == signer.address
    assert record.create2.factory == factory_address
    assert record.create2.base_salt == "402.vln.gg-v1"
    assert not record.create2.chain_specific
    assert list(record.contracts) == ["treasury", "router", "feeCollector"]

    plan = plan_roles(config, factory_address, chain.chain_id)
    for role, salt, address in plan:
        contract = record.contracts[role]
        assert contract.address == address
        assert contract.status == "deployed"
        assert record.salts[role] == salt.to_0x_hex()
        assert chain.get_code(address) != b""
    assert len(set(record.salts.values())) == 3

    router = record.contracts["router"]
    expected_hash = HexBytes(keccak(runtime_code(ROUTER_CODE)))
    assert router.bytecode_hash == expected_hash.to_0x_hex()
    assert len(chain.setter_calls(router.address)) == 2

    assert orchestrator.record_path is not None
    assert os.path.basename(orchestrator.record_path).startswith("create2-base-8453-")
    loaded = load_record(orchestrator.record_path)
    assert loaded == record
    assert loaded.model_extra == {"tokens": {"USDC": USDC}}
    assert loaded.contracts["feeCollector"].model_extra == {"feeRate": 50}


def test_salt_uses_role_namespace(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    record = DeploymentOrchestrator(chain, signer, config).run()
    expected = derive_salt("402.vln.gg-v1-router", 0, 0)
    assert record.salts["router"] == expected.to_0x_hex()


def test_addresses_converge_across_chains(tmp_path, signer):
    records = []
    for chain_id in (8453, 84532, 1):
        chain = FakeChain(chain_id)
        factory = chain.install_factory("0x" + "f1" * 20)
        config = make_config(tmp_path / str(chain_id), factory)
        records.append(DeploymentOrchestrator(chain, signer, config).run())
    for role in ("treasury", "router", "feeCollector"):
        assert len({r.contracts[role].address for r in records}) == 1
        assert len({r.contracts[role].bytecode_hash for r in records}) == 1
        assert len({r.salts[role] for r in records}) == 1


def test_chain_specific_addresses_differ(tmp_path, signer):
    addresses = []
    for chain_id in (8453, 1):
        chain = FakeChain(chain_id)
        factory = chain.install_factory("0x" + "f1" * 20)
        config = make_config(tmp_path / str(chain_id), factory, chain_specific=True)
        record = DeploymentOrchestrator(chain, signer, config).run()
        assert record.create2.chain_specific
        addresses.append(record.contracts["treasury"].address)
    assert addresses[0] != addresses[1]


def test_rerun_is_idempotent(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    first = DeploymentOrchestrator(chain, signer, config).run()
    sent = len(chain.transactions)

    orchestrator = DeploymentOrchestrator(chain, signer, config)
    second = orchestrator.run()

    assert second.complete
    assert len(chain.transactions) == sent
    for role, contract in second.contracts.items():
        assert contract.status == "existing"
        assert contract.address == first.contracts[role].address
        assert contract.bytecode_hash == first.contracts[role].bytecode_hash
    assert all(r.calls_sent == 0 for r in orchestrator.results)
    assert len(os.listdir(tmp_path)) == 2


def test_partial_failure_then_resume(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    chain.fail_when = fail_on_code(ROUTER_CODE)
    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()

    assert not record.complete
    assert set(record.contracts) == {"treasury", "feeCollector"}
    assert "connection reset" in record.failures["router"]
    assert "router" in record.salts
    statuses = {r.role: r.status for r in orchestrator.results}
    assert statuses == {
        "treasury": RoleStatus.DEPLOYED,
        "router": RoleStatus.FAILED,
        "feeCollector": RoleStatus.DEPLOYED,
    }
    # Nothing is rolled back.
    assert chain.get_code(record.contracts["treasury"].address) != b""

    chain.fail_when = None
    resumed = DeploymentOrchestrator(chain, signer, config).run()
    assert resumed.complete
    assert resumed.contracts["treasury"].status == "existing"
    assert resumed.contracts["router"].status == "deployed"
    assert resumed.contracts["feeCollector"].status == "existing"


def test_failed_config_call_is_retried(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    router = plan_roles(config, factory_address, chain.chain_id)[1][2]

    def fail_bridge(to: str, data: bytes) -> bool:
        return to == router and data[:4] == keccak(
            b"setApprovedBridge(address,bool)"
        )[:4]

    chain.fail_when = fail_bridge
    record = DeploymentOrchestrator(chain, signer, config).run()
    assert "router" in record.failures
    assert chain.get_code(router) != b""
    assert len(chain.setter_calls(router)) == 1

    chain.fail_when = None
    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()
    assert record.complete
    assert record.contracts["router"].status == "existing"
    result = next(r for r in orchestrator.results if r.role == "router")
    # Only the bridge approval is sent again.
    assert result.calls_sent == 1
    assert len(chain.setter_calls(router)) == 2


def test_salt_consumed_by_other_code(tmp_path, chain, signer, factory_address):
    config = make_config(tmp_path, factory_address)
    salt = derive_salt("402.vln.gg-v1-treasury", 0, 0)
    chain.mark_salt_used(factory_address, salt)

    record = DeploymentOrchestrator(chain, signer, config).run()
    assert "treasury" in record.failures
    assert "no code" in record.failures["treasury"]
    assert set(record.contracts) == {"router", "feeCollector"}


def test_signer_rejection_fails_role(tmp_path, chain, signer, factory_address):
    class RejectingSigner:
        address = signer.address

        def sign_transaction(self, params):
            if bytes(ROUTER_CODE) in bytes(params["data"]):
                raise UserRejected("Rejected on Trezor device.")
            return signer.sign_transaction(params)

    config = make_config(tmp_path, factory_address)
    record = DeploymentOrchestrator(chain, RejectingSigner(), config).run()
    assert record.failures == {"router": "Rejected on Trezor device."}
    assert set(record.contracts) == {"treasury", "feeCollector"}


def test_undecodable_getter_fails_role(tmp_path, chain, signer, factory_address):
    # The getter answers with one word but two are expected.
    calls = (
        ConfigCall(
            setter="setSupportedToken(address,bool)",
            args=(USDC, True),
            getter="supportedTokens(address)",
            getter_args=(USDC,),
            getter_returns=("uint256", "uint256"),
            expected=(1, 1),
        ),
    )
    config = make_config(
        tmp_path,
        factory_address,
        roles=(
            RoleSpec(name="treasury", creation_code=TREASURY_CODE),
            RoleSpec(name="router", creation_code=ROUTER_CODE, calls=calls),
        ),
    )
    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()

    assert not record.complete
    assert set(record.failures) == {"router"}
    assert record.contracts["treasury"].status == "deployed"
    assert orchestrator.record_path is not None
    assert load_record(orchestrator.record_path) == record
    assert chain.setter_calls() == []


def test_unencodable_setter_fails_role(tmp_path, chain, signer, factory_address):
    calls = (
        ConfigCall(setter="setSupportedToken(address,bool)", args=("0x1234", True)),
    )
    config = make_config(
        tmp_path,
        factory_address,
        roles=(
            RoleSpec(name="treasury", creation_code=TREASURY_CODE),
            RoleSpec(name="router", creation_code=ROUTER_CODE, calls=calls),
        ),
    )
    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()

    assert set(record.failures) == {"router"}
    assert set(record.contracts) == {"treasury"}
    assert orchestrator.record_path is not None
    assert os.path.exists(orchestrator.record_path)


@pytest.mark.parametrize("key", ["address", "status", "bytecodeHash"])
def test_reserved_metadata_keys(key):
    with pytest.raises(ConfigurationError) as excinfo:
        RoleSpec(name="router", creation_code=ROUTER_CODE, metadata={key: "x"})
    assert key in str(excinfo.value)


@pytest.mark.parametrize("key", ["network", "contracts", "complete", "chainId"])
def test_reserved_auxiliary_keys(tmp_path, factory_address, key):
    with pytest.raises(ConfigurationError) as excinfo:
        make_config(tmp_path, factory_address, auxiliary={key: 1})
    assert key in str(excinfo.value)


def test_empty_creation_code_propagates(tmp_path, chain, signer, factory_address):
    config = make_config(
        tmp_path,
        factory_address,
        roles=(RoleSpec(name="broken", creation_code=HexBytes(b"")),),
    )
    with pytest.raises(InvalidCreationCode):
        DeploymentOrchestrator(chain, signer, config).run()
    assert chain.transactions == []
    assert os.listdir(tmp_path) == []


def test_factory_deployed_through_proxy(tmp_path, chain, signer):
    config = make_config(tmp_path, None, factory_creation_code=FACTORY_CODE)
    expected = predict_factory_address(FACTORY_CODE, factory_salt(config))
    assert resolve_factory_address(config) == expected
    assert chain.get_code(expected) == b""

    record = DeploymentOrchestrator(chain, signer, config).run()
    assert record.create2.factory == expected
    assert record.complete
    assert chain.get_code(expected) != b""

    # Second run reuses the factory.
    sent = len(chain.transactions)
    DeploymentOrchestrator(chain, signer, config).run()
    assert len(chain.transactions) == sent


def test_missing_factory(tmp_path, chain, signer):
    config = make_config(tmp_path, "0x" + "f2" * 20)
    with pytest.raises(ConfigurationError):
        DeploymentOrchestrator(chain, signer, config).run()

    with pytest.raises(ConfigurationError):
        resolve_factory_address(make_config(tmp_path, None))


def test_factory_address_mismatch(tmp_path, factory_address):
    config = make_config(tmp_path, factory_address, factory_creation_code=FACTORY_CODE)
    with pytest.raises(ConfigurationError):
        resolve_factory_address(config)


def test_shared_ledger(tmp_path, chain, signer, factory_address):
    ledger = DeploymentLedger(Create2Factory(chain, factory_address))
    config = make_config(tmp_path, factory_address)
    DeploymentOrchestrator(chain, signer, config, ledger=ledger).run()
    assert len(ledger.entries) == 3
    treasury = predict_address(
        factory_address, derive_salt("402.vln.gg-v1-treasury", 0, 0), TREASURY_CODE
    )
    assert {e.address for e in ledger.entries} >= {treasury}
