import pytest

from tenantflow.core.exceptions import RemoteNotFoundError


@pytest.mark.asyncio
async def test_cleanup_removes_everything_created(
    make_orchestrator, cleanup, n8n_client, ledger, credential_store, fake_n8n, user, grant
):
    result = await make_orchestrator().provision(user, grant)
    assert len(result.succeeded) == 4

    report = await cleanup.cleanup_result(result)

    assert report.complete
    assert sorted(report.deleted_workflow_ids) == sorted(result.remote_workflow_ids())
    assert sorted(report.deleted_credential_ids) == sorted(result.credential_ids())
    for workflow_id in result.remote_workflow_ids():
        with pytest.raises(RemoteNotFoundError):
            await n8n_client.get_workflow(workflow_id)
    assert fake_n8n.credentials == {}
    assert ledger.list_for_user(user.id) == []
    assert credential_store.list_for_user(user.id) == []


@pytest.mark.asyncio
async def test_cleaned_up_user_can_be_provisioned_again(make_orchestrator, cleanup, fake_n8n, user, grant):
    orchestrator = make_orchestrator()
    first = await orchestrator.provision(user, grant)
    await cleanup.cleanup_result(first)

    second = await orchestrator.provision(user, grant)

    assert len(second.succeeded) == 4
    assert second.skipped == ()
    assert len(fake_n8n.calls("POST", "/workflows")) == 8


@pytest.mark.asyncio
async def test_already_deleted_resources_count_as_deleted(cleanup):
    report = await cleanup.cleanup("user-1", ["cred-404"], ["wf-404"])

    assert report.deleted_workflow_ids == ["wf-404"]
    assert report.deleted_credential_ids == ["cred-404"]
    assert report.complete


@pytest.mark.asyncio
async def test_failed_deletes_are_collected_not_raised(make_orchestrator, cleanup, fake_n8n, user, grant):
    result = await make_orchestrator().provision(user, grant)
    stuck = result.remote_workflow_ids()[0]
    fake_n8n.fail_delete = {stuck}

    report = await cleanup.cleanup_result(result, include_credentials=False)

    assert not report.complete
    assert len(report.failures) == 1
    assert stuck in report.failures[0]
    assert stuck in fake_n8n.workflows
    assert stuck not in report.deleted_workflow_ids
    assert len(report.deleted_workflow_ids) == 3
    assert report.deleted_credential_ids == []
    assert len(fake_n8n.credentials) == 4
