import pytest

from dungeondeploy.artifacts import ArtifactStore
from dungeondeploy.errors import (
    CyclicDependency,
    DeploymentAborted,
    DeploymentHalted,
    LinkFailed,
    PlanError,
    Reverted,
    RpcError,
    Timeout,
)
from dungeondeploy.orchestrator import ContractState, Orchestrator, plan_order
from dungeondeploy.params import DeploymentPlan
from dungeondeploy.registry import Registry
from tests.conftest import BASE_URI, DEPLOYER, GAS_PRICE, SOUL_SHARD, FakeClient, plan_config

ALL_LINKS = [
    "DungeonCore.setDungeonMaster",
    "DungeonCore.setHeroContract",
    "Hero.setDungeonCore",
    "DungeonMaster.setDungeonCore",
]


def make_orchestrator(client, registry, plan, logger, **kwargs):
    return Orchestrator(
        client=client,
        registry=registry,
        artifacts=ArtifactStore(plan.artifacts_dir),
        logger=logger,
        autosign=True,
        **kwargs,
    )


def reload(registry):
    return Registry.load(registry.filepath, network=registry.network, chain_id=registry.chain_id)


def test_plan_order_places_dependencies_first(plan):
    order = plan_order(plan)
    assert order == ["SoulShard", "Oracle", "DungeonCore", "DungeonMaster", "Hero"]
    for name in order:
        for dependency in plan.dependencies(name):
            assert order.index(dependency) < order.index(name)


def test_plan_order_keeps_declaration_order_without_dependencies(tmp_path, artifacts_dir):
    config = plan_config()
    config["contracts"] = ["Hero", "DungeonMaster", "Oracle"]
    config["links"], config["settings"] = [], []
    plan = DeploymentPlan.from_config(config, path=tmp_path / "plan.yml")
    assert plan_order(plan) == ["Hero", "DungeonMaster", "Oracle"]


def test_cyclic_dependency_fails_before_any_transaction(tmp_path, registry, logger):
    config = plan_config()
    config["contracts"][3] = {
        "DungeonMaster": {"constructor": {"initialOwner": "$deployer"}, "depends_on": ["Hero"]}
    }
    config["contracts"][4] = {"Hero": {"constructor": {"initialOwner": "$deployer"}, "depends_on": ["DungeonMaster"]}}
    plan = DeploymentPlan.from_config(config, path=tmp_path / "plan.yml")

    with pytest.raises(CyclicDependency) as error:
        plan_order(plan)
    assert set(error.value.cycle) == {"DungeonMaster", "Hero"}

    client = FakeClient.for_plan(plan)
    with pytest.raises(CyclicDependency):
        make_orchestrator(client, registry, plan, logger).deploy_all(plan)
    assert client.transactions == 0


def test_deploy_all(plan, registry, fake_client, logger):
    result = make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)

    assert result.ok
    assert result.deployed == ["Oracle", "DungeonCore", "DungeonMaster", "Hero"]
    assert sorted(result.links_applied) == sorted(ALL_LINKS)
    assert result.settings_applied == ["Hero.setBaseURI"]
    assert all(state == ContractState.VERIFIED for state in result.states.values())
    assert fake_client.deploys == result.deployed
    assert result.sends == 4 + 4 + 1

    # constructor references resolve to recorded addresses
    persisted = reload(registry)
    assert persisted.get("SoulShard").address == SOUL_SHARD
    core = persisted.get("DungeonCore")
    assert core.deployer == DEPLOYER
    assert core.tx_hash is not None
    assert core.block_number is not None
    assert fake_client.state[(core.address.lower(), "dungeonMasterAddress")] == persisted.get("DungeonMaster").address
    assert fake_client.state[(persisted.get("Hero").address.lower(), "baseURI")] == BASE_URI

    for key in ALL_LINKS:
        assert key in persisted.links
    assert persisted.pending == {}


def test_links_are_applied_once_both_endpoints_exist(plan, registry, fake_client, logger):
    make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    sent = [(name, method) for name, method, _ in fake_client.sends]
    # wires out of a contract follow its deploy, wires into a later contract wait for the final pass
    assert sent == [
        ("DungeonMaster", "setDungeonCore"),
        ("Hero", "setDungeonCore"),
        ("DungeonCore", "setDungeonMaster"),
        ("DungeonCore", "setHeroContract"),
        ("Hero", "setBaseURI"),
    ]


def test_deferred_link_waits_for_all_deployments(plan, registry, fake_client, logger):
    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    original_deploy = fake_client.deploy
    sent_before_hero = list()

    def record_then_deploy(name, *args, **kwargs):
        if name == "Hero":
            sent_before_hero.extend(method for _, method, _ in fake_client.sends)
        return original_deploy(name, *args, **kwargs)

    fake_client.deploy = record_then_deploy
    orchestrator.deploy_all(plan)
    # DungeonCore -> DungeonMaster is deferred, DungeonMaster -> DungeonCore is not
    assert sent_before_hero == ["setDungeonCore"]
    assert fake_client.deploys[-1] == "Hero"


def test_rerun_sends_nothing(plan, registry, fake_client, logger):
    make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    sent = fake_client.transactions

    result = make_orchestrator(fake_client, reload(registry), plan, logger).deploy_all(plan)

    assert fake_client.transactions == sent
    assert result.sends == 0
    assert result.deployed == []
    assert result.skipped == ["Oracle", "DungeonCore", "DungeonMaster", "Hero"]
    assert sorted(result.links_unchanged) == sorted(ALL_LINKS)
    assert result.settings_unchanged == ["Hero.setBaseURI"]
    assert result.ok


def test_links_already_wired_on_chain_are_recorded_without_sending(plan, registry, fake_client, logger):
    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    orchestrator.deploy_all(plan)
    # forget the links, as if a previous run crashed before recording them
    registry.links.clear()

    result = make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert result.sends == 0
    assert sorted(registry.links) == sorted(ALL_LINKS)
    assert all(link.tx_hash is None for link in registry.links.values())


def test_link_retries_transient_failures_with_bumped_fee(plan, registry, fake_client, logger):
    fake_client.await_errors["DungeonCore.setHeroContract"] = [Timeout("slow"), RpcError("flaky")]

    result = make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)

    assert result.ok
    assert fake_client.nonce_resets == 2
    attempts = [
        (handle, options)
        for handle, options in fake_client.attempts
        if (handle.contract, handle.operation) == ("DungeonCore", "setHeroContract")
    ]
    assert len(attempts) == 3
    (first, first_options), (second, second_options), (third, third_options) = attempts
    assert first_options.gas_price is None
    assert second_options.gas_price > GAS_PRICE
    assert third_options.gas_price > second_options.gas_price
    assert second_options.replace and third_options.replace
    # every retry replaces the stuck transaction instead of queueing behind it
    assert first.nonce == second.nonce == third.nonce
    assert first.tx_hash != second.tx_hash != third.tx_hash
    assert registry.pending == {}


def test_link_timeout_keeps_pending_until_replacement_confirms(plan, registry, fake_client, logger):
    fake_client.await_errors["Hero.setDungeonCore"] = [Timeout("slow")]
    make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert registry.pending == {}


def test_reverted_link_is_not_retried_by_default(plan, registry, fake_client, logger):
    fake_client.await_errors["Hero.setDungeonCore"] = [Reverted("Hero.setDungeonCore reverted", reason="Ownable: caller is not the owner")]

    with pytest.raises(LinkFailed, match="caller is not the owner"):
        make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert fake_client.nonce_resets == 0
    assert "Hero.setDungeonCore" not in registry.links


def test_reverted_link_is_retried_when_requested(plan, registry, fake_client, logger):
    fake_client.await_errors["Hero.setDungeonCore"] = [Reverted("reverted")]
    result = make_orchestrator(fake_client, registry, plan, logger, retry_reverted=True).deploy_all(plan)
    assert result.ok
    assert fake_client.nonce_resets == 1


def test_link_failure_after_retries_is_reported(plan, registry, fake_client, logger):
    fake_client.await_errors["DungeonMaster.setDungeonCore"] = [Timeout("slow")] * 3

    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    with pytest.raises(LinkFailed, match="after 3 attempt"):
        orchestrator.deploy_all(plan)
    assert orchestrator.state("DungeonMaster") == ContractState.FAILED
    # the unconfirmed attempts stay visible as unknown-outcome transactions
    assert len(registry.pending) == 3


def test_failed_deployment_halts_and_keeps_progress(plan, registry, fake_client, logger):
    fake_client.errors["DungeonMaster"] = [RpcError("insufficient funds", retryable=False)]

    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    with pytest.raises(DeploymentHalted, match="DungeonMaster"):
        orchestrator.deploy_all(plan)

    assert orchestrator.state("DungeonMaster") == ContractState.FAILED
    assert "Hero" not in fake_client.deploys
    persisted = reload(registry)
    assert "Oracle" in persisted
    assert "DungeonCore" in persisted
    assert "DungeonMaster" not in persisted

    # a second run resumes where the first stopped
    result = make_orchestrator(fake_client, persisted, plan, logger).deploy_all(plan)
    assert result.deployed == ["DungeonMaster", "Hero"]
    assert result.ok


def test_deploy_timeout_is_recovered_on_next_run(plan, registry, fake_client, logger):
    fake_client.await_errors["Hero.deploy"] = [Timeout("slow")]

    with pytest.raises(DeploymentHalted):
        make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert [tx.contract for tx in registry.pending.values()] == ["Hero"]

    result = make_orchestrator(fake_client, reload(registry), plan, logger).deploy_all(plan)
    assert fake_client.deploys.count("Hero") == 1
    assert "Hero" in result.skipped
    assert result.ok


def test_abort_stops_before_next_send(plan, registry, fake_client, logger):
    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    orchestrator.abort()
    with pytest.raises(DeploymentAborted):
        orchestrator.deploy_all(plan)
    assert fake_client.transactions == 0


def test_abort_during_run_finishes_in_flight_transaction(plan, registry, fake_client, logger):
    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    original_deploy = fake_client.deploy

    def deploy_then_abort(name, *args, **kwargs):
        handle = original_deploy(name, *args, **kwargs)
        if name == "DungeonCore":
            orchestrator.abort()
        return handle

    fake_client.deploy = deploy_then_abort
    with pytest.raises(DeploymentAborted):
        orchestrator.deploy_all(plan)
    # DungeonCore was awaited and recorded, nothing was sent afterwards
    assert "DungeonCore" in reload(registry)
    assert fake_client.deploys == ["Oracle", "DungeonCore"]


def test_recorded_contract_without_code_halts(plan, registry, fake_client, logger):
    make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    fake_client.code.pop(registry.get("Hero").address.lower())

    with pytest.raises(DeploymentHalted, match="no code"):
        make_orchestrator(fake_client, reload(registry), plan, logger).deploy_all(plan)


def test_plan_for_other_chain_is_rejected(tmp_path, artifacts_dir, registry, fake_client, logger):
    config = plan_config()
    config["deployment"]["chain_id"] = 56
    plan = DeploymentPlan.from_config(config, path=tmp_path / "plan.yml")
    with pytest.raises(PlanError, match="chain 56"):
        make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert fake_client.transactions == 0


def test_empty_balance_halts_before_deploying(plan, registry, fake_client, logger):
    fake_client.balance = 0
    with pytest.raises(DeploymentHalted, match="no balance"):
        make_orchestrator(fake_client, registry, plan, logger).deploy_all(plan)
    assert fake_client.transactions == 0


def test_invalid_state_transition(plan, registry, fake_client, logger):
    orchestrator = make_orchestrator(fake_client, registry, plan, logger)
    with pytest.raises(ValueError, match="pending -> verified"):
        orchestrator._transition("Hero", ContractState.VERIFIED)
