"""Tests for the Flask API."""

from typing import Iterator
from unittest.mock import MagicMock, patch

import pytest

from app import app
from builders import make_item, node
from services.azure_devops_service import AzureDevOpsAuthenticationError


@pytest.fixture
def client():
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def mock_service(azdo_env: None) -> Iterator[MagicMock]:
    with patch("app.AzureDevOpsService") as mock_cls:
        service = MagicMock()
        mock_cls.from_config.return_value = service
        yield service


def _forest():
    return [
        node(
            make_item(1, "Epic"),
            node(make_item(2, "Task", 3)),
            node(make_item(3, "Task", 5)),
        )
    ]


def test_health(client) -> None:
    assert client.get("/health").get_json() == {"status": "healthy"}
    assert client.get("/azdo-tree/health").status_code == 200


def test_list_completed_returns_rolled_up_tree(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.return_value = _forest()

    response = client.post("/azdo-tree/list-completed", json={"period": "week"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["total_completed_work"] == 8
    root = body["work_items"][0]
    assert root["id"] == 1
    assert root["completed_work"] == 8
    assert root["url"] == "https://dev.azure.com/contoso/Fabrikam Fiber/_workitems/edit/1"
    assert [child["id"] for child in root["children"]] == [2, 3]
    mock_service.list_completed_work_item_tree.assert_called_once_with("@StartOfWeek")


def test_list_completed_without_body_defaults_to_today(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.return_value = []

    response = client.post("/azdo-tree/list-completed")

    assert response.status_code == 200
    assert response.get_json() == {"message": "No work items found.", "total_completed_work": 0, "work_items": []}
    mock_service.list_completed_work_item_tree.assert_called_once_with("@StartOfDay")


def test_list_active_without_period_has_no_date_limit(client, mock_service: MagicMock) -> None:
    mock_service.list_active_work_item_tree.return_value = _forest()

    response = client.post("/azdo-tree/list-active", json={})

    assert response.status_code == 200
    mock_service.list_active_work_item_tree.assert_called_once_with(None)


def test_list_all_uses_merged_tree_and_leaf_kind(client, mock_service: MagicMock) -> None:
    mock_service.list_all_work_item_tree.return_value = [
        node(make_item(1, "Feature"), node(make_item(2, "Bug", 4)), node(make_item(3, "Task", 1)))
    ]

    response = client.post("/azdo-tree/list-all", json={"period": "month", "leaf_kind": "Bug"})

    body = response.get_json()
    assert body["total_completed_work"] == 4
    assert body["work_items"][0]["completed_work"] == 4
    mock_service.list_all_work_item_tree.assert_called_once_with("@StartOfMonth")


def test_missing_configuration_is_bad_request(client, clean_env: None) -> None:
    response = client.post("/azdo-tree/list-completed", json={})

    assert response.status_code == 400
    assert "organization" in response.get_json()["error"]


def test_request_credentials_complete_configuration(client, clean_env: None) -> None:
    with patch("app.AzureDevOpsService") as mock_cls:
        mock_cls.from_config.return_value.list_completed_work_item_tree.return_value = []
        response = client.post("/azdo-tree/list-completed", json={
            "AZURE_PAT": "pat",
            "ORGANIZATION": "contoso",
            "PROJECT": "Fabrikam",
            "USER_EMAIL": "ada@contoso.com",
        })

    assert response.status_code == 200
    config = mock_cls.from_config.call_args.args[0]
    assert config.project == "Fabrikam"


def test_authentication_error_is_unauthorized(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.side_effect = AzureDevOpsAuthenticationError("bad pat")

    response = client.post("/azdo-tree/list-completed", json={})

    assert response.status_code == 401
    assert response.get_json()["status"] == "unauthorized"


def test_unexpected_error_is_internal_error(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.side_effect = RuntimeError("boom")

    response = client.post("/azdo-tree/list-completed", json={})

    assert response.status_code == 500
    assert "boom" not in response.get_json()["error"]


def test_non_object_body_is_bad_request(client, mock_service: MagicMock) -> None:
    response = client.post("/azdo-tree/list-completed", json=[1, 2])

    assert response.status_code == 400


def test_report_requires_storage_parameters(client, mock_service: MagicMock) -> None:
    response = client.post("/azdo-tree/report", json={"mode": "completed"})

    assert response.status_code == 400
    assert "storage" in response.get_json()["error"]
    mock_service.list_completed_work_item_tree.assert_not_called()


def test_report_rejects_unknown_mode(client, mock_service: MagicMock) -> None:
    response = client.post("/azdo-tree/report", json={"mode": "yesterday"})

    assert response.status_code == 400


def test_report_builds_and_uploads_workbook(client, mock_service: MagicMock) -> None:
    mock_service.list_all_work_item_tree.return_value = _forest()

    with patch("app.ReportService") as mock_report_cls, \
            patch("app.AzureBlobStorageService") as mock_storage_cls:
        mock_storage_cls.return_value.upload_file.return_value = "https://acct.blob.core.windows.net/r/weekly.xlsx"
        response = client.post("/azdo-tree/report", json={
            "mode": "all",
            "period": "week",
            "output_file_name": "weekly",
            "storage_account_name": "acct",
            "container_name": "r",
            "storage_account_sas": "sas",
        })

    assert response.status_code == 200
    assert response.headers["file_name"] == "weekly.xlsx"
    assert response.get_json()["file_url"].endswith("weekly.xlsx")
    assert response.get_json()["total_completed_work"] == 8

    build_args = mock_report_cls.return_value.build_excel_workbook.call_args.args
    forest, total = build_args[0], build_args[1]
    assert total == 8
    assert forest[0].item.completed_work == 8
    mock_storage_cls.assert_called_once_with("acct", "r", "sas")
    assert mock_storage_cls.return_value.upload_file.call_args.args[1] == "weekly.xlsx"


def test_report_with_no_work_items_skips_upload(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.return_value = []

    with patch("app.AzureBlobStorageService") as mock_storage_cls:
        response = client.post("/azdo-tree/report", json={
            "storage_account_name": "acct",
            "container_name": "r",
            "storage_account_sas": "sas",
        })

    assert response.status_code == 200
    assert response.get_json()["file_url"] is None
    mock_storage_cls.assert_not_called()


def test_create_work_item_defaults_assignee_to_configured_user(client, mock_service: MagicMock) -> None:
    mock_service.create_work_item.return_value = make_item(42, "Task", state="To Do")

    response = client.post("/azdo-tree/work-items", json={"title": "Write docs", "type": "Task"})

    assert response.status_code == 201
    assert response.get_json()["id"] == 42
    mock_service.create_work_item.assert_called_once_with("Write docs", "Task", "ada@contoso.com")


def test_create_work_item_requires_title_and_type(client, mock_service: MagicMock) -> None:
    response = client.post("/azdo-tree/work-items", json={"title": "Write docs"})

    assert response.status_code == 400
    mock_service.create_work_item.assert_not_called()


def test_update_work_item(client, mock_service: MagicMock) -> None:
    mock_service.update_work_item.return_value = make_item(42, "Task", state="Done")

    response = client.patch("/azdo-tree/work-items/42", json={"state": "Done"})

    assert response.status_code == 200
    assert response.get_json()["state"] == "Done"
    mock_service.update_work_item.assert_called_once_with(42, title=None, state="Done", assigned_to=None)


def test_update_work_item_with_nothing_to_change(client, mock_service: MagicMock) -> None:
    response = client.patch("/azdo-tree/work-items/42", json={"title": None})

    assert response.status_code == 400
    assert response.get_json()["status"] == "bad_request"
    mock_service.update_work_item.assert_not_called()


def test_value_error_from_service_is_internal_error(client, mock_service: MagicMock) -> None:
    mock_service.list_completed_work_item_tree.side_effect = ValueError("could not convert string to float: 'abc'")

    response = client.post("/azdo-tree/list-completed", json={})

    assert response.status_code == 500
    assert response.get_json()["status"] == "error"
