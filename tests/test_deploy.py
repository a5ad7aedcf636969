"""Tests for credentials, deployment targets and the deployment executor."""

from datetime import datetime, timezone

import boto3
import pytest
from botocore.exceptions import ReadTimeoutError
from botocore.stub import ANY, Stubber

from conftest import NETWORK_OPERATIONS, NETWORK_TEMPLATE, make_artifact

from iac_pipeline.core.cancellation import CancellationToken
from iac_pipeline.core.errors import (
    ConfigurationError,
    DeploymentFailed,
    PermissionInsufficient,
)
from iac_pipeline.core.models import ChangeAction, DeploymentCredential, ResourceChange
from iac_pipeline.deploy import (
    ApplyState,
    ApplyStatus,
    CloudFormationTarget,
    DeploymentExecutor,
    DeploymentStatus,
    InMemoryTarget,
    check_credential,
    get_target,
    plan_changes,
    required_operations,
)

BUCKET_TEMPLATE = b"""
Resources:
  Vpc:
    Type: AWS::EC2::VPC
  Subnet:
    Type: AWS::EC2::Subnet
  Logs:
    Type: AWS::S3::Bucket
"""

TAB_INDENTED_TEMPLATE = b"Resources:\n\tRole:\n\t\tType: AWS::IAM::Role\n"

SUBSTITUTED_TYPE_TEMPLATE = b"""
Resources:
  Role:
    Type: !Sub "AWS::IAM::Role"
"""


def executor(target, **options):
    options.setdefault("poll_interval_seconds", 0.01)
    options.setdefault("sleep", lambda seconds: None)
    return DeploymentExecutor(target, **options)


class TestPlanChanges:
    def test_create_update_delete(self):
        changes = plan_changes(
            {"Vpc": "AWS::EC2::VPC", "Old": "AWS::SNS::Topic"},
            {"Vpc": "AWS::EC2::VPC", "Subnet": "AWS::EC2::Subnet"},
        )
        assert [(c.logical_id, c.action) for c in changes] == [
            ("Subnet", ChangeAction.CREATE),
            ("Vpc", ChangeAction.UPDATE),
            ("Old", ChangeAction.DELETE),
        ]

    def test_type_change_replaces(self):
        changes = plan_changes({"Store": "AWS::S3::Bucket"}, {"Store": "AWS::DynamoDB::Table"})
        assert [c.operation for c in changes] == [
            "AWS::S3::Bucket:delete",
            "AWS::DynamoDB::Table:create",
        ]


class TestCredentials:
    """Credentials must cover the full lifecycle of every resource type."""

    def test_required_operations_cover_lifecycle(self):
        assert required_operations(make_artifact()) == NETWORK_OPERATIONS

    def test_planned_deletes_of_removed_types_are_required(self):
        change = ResourceChange("Old", "AWS::SNS::Topic", ChangeAction.DELETE)
        required = required_operations(make_artifact(), [change])
        assert "AWS::SNS::Topic:delete" in required

    def test_check_passes(self, credential):
        assert check_credential(credential, make_artifact()) == NETWORK_OPERATIONS

    def test_missing_delete_is_rejected(self):
        """Create and update alone are not enough to own a resource."""
        credential = DeploymentCredential(
            name="half",
            allowed_operations=frozenset(
                op for op in NETWORK_OPERATIONS if not op.endswith(":delete")
            ),
        )
        with pytest.raises(PermissionInsufficient) as exc_info:
            check_credential(credential, make_artifact())
        assert exc_info.value.missing == ["AWS::EC2::Subnet:delete", "AWS::EC2::VPC:delete"]

    @pytest.mark.parametrize(
        "body,reason",
        [
            (TAB_INDENTED_TEMPLATE, "does not parse"),
            (SUBSTITUTED_TYPE_TEMPLATE, "resource 'Role' has no literal Type"),
            (b"Resources: everything\n", "no Resources mapping"),
            (b"\xff\xfe", "not UTF-8"),
        ],
    )
    def test_unreadable_resources_fail_closed(self, credential, body, reason):
        """Operations that cannot be determined are never assumed to be none."""
        with pytest.raises(PermissionInsufficient, match="cannot be checked") as exc_info:
            check_credential(credential, make_artifact(body=body))
        assert reason in exc_info.value.message


class TestInMemoryTarget:
    def test_apply_commits_all_or_nothing(self, credential):
        target = InMemoryTarget("staging", fail_on={"Subnet": "subnet limit reached"})
        artifact = make_artifact()
        handle = target.apply(artifact, target.plan(artifact), credential)

        status = target.status(handle)
        assert status.state == ApplyState.FAILED
        assert status.failed_operation == "AWS::EC2::Subnet:create"
        assert status.failed_resource == "Subnet"
        assert target.resources == {}

    def test_unknown_handle(self):
        assert InMemoryTarget("staging").status("nope").state == ApplyState.UNKNOWN


class TestDeploymentExecutor:
    def test_successful_deploy(self, target, credential):
        outcome = executor(target).deploy(make_artifact(), credential)

        assert outcome.status == DeploymentStatus.SUCCEEDED
        assert outcome.succeeded
        assert {c.action for c in outcome.changes} == {ChangeAction.CREATE}
        assert target.resources == {"Vpc": "AWS::EC2::VPC", "Subnet": "AWS::EC2::Subnet"}

    def test_permission_checked_before_any_mutation(self, target, credential):
        """A template adding an unpermitted resource type never reaches apply."""
        artifact = make_artifact(body=BUCKET_TEMPLATE)

        with pytest.raises(PermissionInsufficient) as exc_info:
            executor(target).deploy(artifact, credential)

        assert "AWS::S3::Bucket:create" in exc_info.value.missing
        assert target.apply_count == 0
        assert target.operations == []
        assert target.resources == {}

    @pytest.mark.parametrize("body", [TAB_INDENTED_TEMPLATE, SUBSTITUTED_TYPE_TEMPLATE])
    def test_unreadable_template_never_applied(self, target, body):
        with pytest.raises(PermissionInsufficient):
            executor(target).deploy(make_artifact(body=body), DeploymentCredential("nothing"))

        assert target.apply_count == 0
        assert target.resources == {}

    def test_failure_reports_operation_and_resource(self, credential):
        target = InMemoryTarget("production", fail_on={"Vpc": "VPC limit exceeded"})
        outcome = executor(target).deploy(make_artifact(), credential)

        assert outcome.status == DeploymentStatus.FAILED
        assert outcome.failed_operation == "AWS::EC2::VPC:create"
        assert outcome.failed_resource == "Vpc"
        assert outcome.message == "VPC limit exceeded"

    def test_unknown_status_keeps_polling(self, credential):
        """Unknown is never an outcome; the executor polls through it."""
        target = InMemoryTarget("production", unknown_polls=3, in_progress_polls=2)
        outcome = executor(target).deploy(make_artifact(), credential)

        assert outcome.status == DeploymentStatus.SUCCEEDED
        assert outcome.polls == 6

    def test_poll_errors_count_as_unknown(self, credential):
        class Flaky(InMemoryTarget):
            failures = 2

            def status(self, handle):
                if self.failures:
                    self.failures -= 1
                    raise DeploymentFailed("describe failed")
                return super().status(handle)

        outcome = executor(Flaky("production")).deploy(make_artifact(), credential)
        assert outcome.status == DeploymentStatus.SUCCEEDED

    def test_timeout_cancels_and_resolves(self, credential):
        target = InMemoryTarget("production", hang=True)
        outcome = executor(target, deploy_timeout_seconds=0.1).deploy(
            make_artifact(), credential
        )

        assert outcome.status == DeploymentStatus.TIMED_OUT
        assert outcome.message == "Apply cancelled and rolled back"
        assert target.resources == {}

    def test_cancel_token_stops_deploy(self, credential):
        target = InMemoryTarget("production", hang=True)
        token = CancellationToken()

        class CancelOnPoll(InMemoryTarget):
            def status(self, handle):
                token.cancel("operator request")
                return target.status(handle)

        proxy = CancelOnPoll("production")
        proxy.plan = target.plan
        proxy.apply = target.apply
        proxy.cancel = target.cancel

        outcome = executor(proxy).deploy(make_artifact(), credential, token)

        assert outcome.status == DeploymentStatus.CANCELLED
        assert target.resources == {}

    def test_cancelled_before_apply(self, target, credential):
        token = CancellationToken()
        token.cancel()
        outcome = executor(target).deploy(make_artifact(), credential, token)

        assert outcome.status == DeploymentStatus.CANCELLED
        assert target.apply_count == 0

    def test_apply_finishing_during_cancel_reports_real_outcome(self, credential):
        """If the apply settles before the cancel lands, its result stands."""
        target = InMemoryTarget("production", in_progress_polls=1)

        class IgnoresCancel(InMemoryTarget):
            def plan(self, artifact):
                return target.plan(artifact)

            def apply(self, artifact, changes, cred):
                return target.apply(artifact, changes, cred)

            def status(self, handle):
                return target.status(handle)

            def cancel(self, handle):
                pass

        outcome = executor(IgnoresCancel("production"), deploy_timeout_seconds=0.0).deploy(
            make_artifact(), credential
        )
        assert outcome.status == DeploymentStatus.SUCCEEDED

    def test_unresolved_after_cancel(self, credential):
        class Stuck(InMemoryTarget):
            def status(self, handle):
                return ApplyStatus(ApplyState.IN_PROGRESS)

        outcome = executor(
            Stuck("production"), deploy_timeout_seconds=0.0, resolve_timeout_seconds=0.05
        ).deploy(make_artifact(), credential)

        assert outcome.status == DeploymentStatus.TIMED_OUT
        assert "unresolved" in outcome.message
        assert outcome.to_dict()["status"] == "timed_out"


STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/network-stack/4f2b"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ROLE_ARN = "arn:aws:iam::123456789012:role/deployer"


def stacks(status, reason=None):
    stack = {
        "StackName": "network-stack",
        "StackId": STACK_ID,
        "CreationTime": NOW,
        "StackStatus": status,
    }
    if reason:
        stack["StackStatusReason"] = reason
    return {"Stacks": [stack]}


def stack_event(logical_id, status, resource_type="AWS::CloudFormation::Stack", **extra):
    return {
        "StackId": STACK_ID,
        "EventId": f"{logical_id}-{status}",
        "StackName": "network-stack",
        "LogicalResourceId": logical_id,
        "ResourceType": resource_type,
        "ResourceStatus": status,
        "Timestamp": NOW,
        **extra,
    }


def missing_stack(stubber, operation="describe_stacks"):
    stubber.add_client_error(
        operation,
        service_error_code="ValidationError",
        service_message="Stack with id network-stack does not exist",
        http_status_code=400,
    )


def request_token(handle):
    return handle.rsplit(":", 1)[1]


@pytest.fixture
def cfn():
    """CloudFormationTarget on a stubbed client: ``(target, stubber)``."""
    client = boto3.client(
        "cloudformation",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield CloudFormationTarget("production", "network-stack", client=client), stubber
        stubber.assert_no_pending_responses()


class TestCloudFormationTarget:
    def test_plan_against_missing_stack(self, cfn):
        target, stubber = cfn
        missing_stack(stubber, "describe_stack_resources")

        changes = target.plan(make_artifact())
        assert {c.action for c in changes} == {ChangeAction.CREATE}

    def test_plan_against_existing_stack(self, cfn):
        target, stubber = cfn
        stubber.add_response(
            "describe_stack_resources",
            {
                "StackResources": [
                    {
                        "LogicalResourceId": logical_id,
                        "ResourceType": resource_type,
                        "Timestamp": NOW,
                        "ResourceStatus": "CREATE_COMPLETE",
                    }
                    for logical_id, resource_type in [
                        ("Vpc", "AWS::EC2::VPC"),
                        ("Legacy", "AWS::SNS::Topic"),
                    ]
                ]
            },
            {"StackName": "network-stack"},
        )

        actions = {c.logical_id: c.action for c in target.plan(make_artifact())}
        assert actions == {
            "Vpc": ChangeAction.UPDATE,
            "Subnet": ChangeAction.CREATE,
            "Legacy": ChangeAction.DELETE,
        }

    def test_plan_access_denied_raises(self, cfn):
        target, stubber = cfn
        stubber.add_client_error(
            "describe_stack_resources", service_error_code="AccessDenied", http_status_code=403
        )
        with pytest.raises(DeploymentFailed, match="AccessDenied"):
            target.plan(make_artifact())

    def test_create_passes_role_and_capabilities(self, cfn):
        target, stubber = cfn
        credential = DeploymentCredential("deployer", NETWORK_OPERATIONS, role_arn=ROLE_ARN)
        missing_stack(stubber)
        stubber.add_response(
            "create_stack",
            {"StackId": STACK_ID},
            {
                "StackName": "network-stack",
                "TemplateBody": NETWORK_TEMPLATE.decode(),
                "ClientRequestToken": ANY,
                "Capabilities": ["CAPABILITY_NAMED_IAM"],
                "RoleARN": ROLE_ARN,
            },
        )

        handle = target.apply(make_artifact(), [], credential)
        assert handle.startswith("network-stack:")

    def test_no_updates_is_success(self, cfn, credential):
        target, stubber = cfn
        stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))
        stubber.add_client_error(
            "update_stack",
            service_error_code="ValidationError",
            service_message="No updates are to be performed.",
            http_status_code=400,
        )

        handle = target.apply(make_artifact(), [], credential)
        assert target.status(handle).state == ApplyState.SUCCEEDED

    def test_rejected_apply_raises(self, cfn, credential):
        target, stubber = cfn
        stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))
        stubber.add_client_error(
            "update_stack",
            service_error_code="AccessDenied",
            service_message="not authorized to perform cloudformation:UpdateStack",
            http_status_code=403,
        )
        with pytest.raises(DeploymentFailed, match="AccessDenied"):
            target.apply(make_artifact(), [], credential)

    def test_status_mapping(self, cfn):
        target, stubber = cfn
        cases = [
            ("CREATE_IN_PROGRESS", ApplyState.IN_PROGRESS),
            ("UPDATE_COMPLETE", ApplyState.SUCCEEDED),
            ("REVIEW_IN_PROGRESS", ApplyState.IN_PROGRESS),
            ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", ApplyState.IN_PROGRESS),
        ]
        for stack_status, _ in cases:
            stubber.add_response("describe_stacks", stacks(stack_status))

        for stack_status, expected in cases:
            assert target.status("h").state == expected, stack_status

    def test_failure_names_root_cause_resource(self, cfn):
        target, stubber = cfn
        stubber.add_response("describe_stacks", stacks("UPDATE_ROLLBACK_COMPLETE"))
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    stack_event("network-stack", "UPDATE_ROLLBACK_COMPLETE"),
                    stack_event(
                        "Vpc",
                        "UPDATE_FAILED",
                        "AWS::EC2::VPC",
                        ResourceStatusReason="Resource update cancelled",
                    ),
                    stack_event(
                        "Subnet",
                        "CREATE_FAILED",
                        "AWS::EC2::Subnet",
                        ResourceStatusReason="CIDR conflicts with another subnet",
                    ),
                ]
            },
        )

        status = target.status("h")
        assert status.state == ApplyState.FAILED
        assert status.failed_operation == "AWS::EC2::Subnet:create"
        assert status.failed_resource == "Subnet"
        assert status.message == "CIDR conflicts with another subnet"

    def test_rollback_after_cancel_is_cancelled(self, cfn):
        target, stubber = cfn
        stubber.add_response("cancel_update_stack", {}, {"StackName": "network-stack"})
        stubber.add_response("describe_stacks", stacks("UPDATE_ROLLBACK_COMPLETE"))

        target.cancel("h")
        assert target.status("h").state == ApplyState.CANCELLED

    def test_cancel_refused_is_not_raised(self, cfn):
        target, stubber = cfn
        stubber.add_client_error(
            "cancel_update_stack",
            service_error_code="ValidationError",
            service_message="CancelUpdateStack cannot be called from current stack status",
            http_status_code=400,
        )
        target.cancel("h")

    def test_describe_errors_are_unknown(self, cfn):
        target, stubber = cfn
        stubber.add_client_error("describe_stacks", service_error_code="Throttling")
        assert target.status("h").state == ApplyState.UNKNOWN


class TestCloudFormationApplyTimeout:
    """An update whose request times out is resolved from stack events."""

    def time_out(self, monkeypatch, target, stubber, after_send=None):
        def update_stack(**params):
            if after_send is not None:
                after_send(params["ClientRequestToken"])
            raise ReadTimeoutError(
                endpoint_url="https://cloudformation.us-east-1.amazonaws.com/"
            )

        stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))
        monkeypatch.setattr(target.client, "update_stack", update_stack)

    def test_update_landed_is_polled_to_its_outcome(self, cfn, credential, monkeypatch):
        target, stubber = cfn

        def landed(token):
            stubber.add_response("describe_stacks", stacks("UPDATE_IN_PROGRESS"))
            stubber.add_response(
                "describe_stack_events",
                {
                    "StackEvents": [
                        stack_event(
                            "network-stack", "UPDATE_IN_PROGRESS", ClientRequestToken=token
                        )
                    ]
                },
            )
            stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))

        stubber.add_response("describe_stack_resources", {"StackResources": []})
        self.time_out(monkeypatch, target, stubber, after_send=landed)

        outcome = executor(target).deploy(make_artifact(), credential)

        assert outcome.status == DeploymentStatus.SUCCEEDED
        assert outcome.polls == 2

    def test_update_never_seen_fails(self, cfn, credential, monkeypatch):
        target, stubber = cfn
        target.confirm_timeout_seconds = 0.0
        self.time_out(monkeypatch, target, stubber)
        handle = target.apply(make_artifact(), [], credential)

        stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))
        stubber.add_response(
            "describe_stack_events",
            {"StackEvents": [stack_event("network-stack", "UPDATE_COMPLETE")]},
        )
        status = target.status(handle)

        assert status.state == ApplyState.FAILED
        assert "never applied" in status.message

    def test_unconfirmed_update_waits_as_unknown(self, cfn, credential, monkeypatch):
        target, stubber = cfn
        self.time_out(monkeypatch, target, stubber)
        handle = target.apply(make_artifact(), [], credential)

        stubber.add_response("describe_stacks", stacks("UPDATE_COMPLETE"))
        stubber.add_response("describe_stack_events", {"StackEvents": []})
        assert target.status(handle).state == ApplyState.UNKNOWN

        stubber.add_response("describe_stacks", stacks("UPDATE_ROLLBACK_COMPLETE"))
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    stack_event(
                        "Vpc",
                        "UPDATE_FAILED",
                        "AWS::EC2::VPC",
                        ResourceStatusReason="VPC limit exceeded",
                        ClientRequestToken=request_token(handle),
                    )
                ]
            },
        )
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    stack_event(
                        "Vpc",
                        "UPDATE_FAILED",
                        "AWS::EC2::VPC",
                        ResourceStatusReason="VPC limit exceeded",
                        ClientRequestToken=request_token(handle),
                    )
                ]
            },
        )
        status = target.status(handle)
        assert status.state == ApplyState.FAILED
        assert status.failed_operation == "AWS::EC2::VPC:update"


class TestTargetFactory:
    def test_builds_targets(self):
        assert isinstance(get_target("in_memory", "dev"), InMemoryTarget)
        cfn = get_target("cloudformation", "prod", stack_name="net", region="eu-west-1")
        assert isinstance(cfn, CloudFormationTarget)
        assert cfn.region == "eu-west-1"

    def test_rejects_bad_config(self):
        with pytest.raises(ConfigurationError):
            get_target("cloudformation", "prod")
        with pytest.raises(ConfigurationError):
            get_target("terraform", "prod")
