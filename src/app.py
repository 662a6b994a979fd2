from flask import Flask, request, jsonify
import os
import tempfile
from datetime import datetime
from services.azure_devops_service import (
    AzureDevOpsService,
    AzureDevOpsAuthenticationError,
    resolve_wiql_period,
)
from services.config_service import (
    AzureDevOpsConfigurationError,
    apply_request_overrides,
    load_config,
)
from services.models import WorkItemTreeNode
from services.report_service import ReportService, forest_to_dict, node_to_dict
from services.rollup_service import DEFAULT_LEAF_KIND, compute_rollups
from services.storage_service import AzureBlobStorageService, safe_blob_name
from services.logging_service import setup_logging
from flasgger import Swagger

# Configure logging
logger = setup_logging()

# Initialize Flask app
app = Flask(__name__)

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/azdo-tree/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/azdo-tree/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/azdo-tree/docs"
}

swagger_template = {
    "info": {
        "title": "Azure DevOps Work Item Tree API",
        "description": "Work item trees with completed work rolled up from Tasks to their parents",
        "version": "1.0",
        "contact": {
            "name": "API Support"
        }
    }
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)

LIST_MODES = ("completed", "active", "all")
UPDATABLE_FIELDS = ("title", "state", "assigned_to")


class RequestValidationError(Exception):
    """Raised for malformed API request bodies"""
    pass


@app.route('/health', methods=['GET'])
@app.route('/azdo-tree/health', methods=['GET'])
def health_check():
    """
    Health check endpoint
    ---
    responses:
      200:
        description: Service is healthy
    """
    return jsonify({"status": "healthy"}), 200


@app.route('/azdo-tree/list-completed', methods=['POST'])
def list_completed_api():
    """
    List completed Tasks assigned to the user, as trees with rolled up completed work
    ---
    parameters:
      - in: body
        name: body
        required: false
        schema:
          type: object
          properties:
            period:
              type: string
              description: day, week or month (default day)
            leaf_kind:
              type: string
              description: Work item type whose completed work is summed (default Task)
            AZURE_PAT:
              type: string
              description: Overrides the configured Personal Access Token
            ORGANIZATION:
              type: string
              description: Overrides the configured organization
            PROJECT:
              type: string
              description: Overrides the configured project
            USER_EMAIL:
              type: string
              description: Overrides the configured user
    responses:
      200:
        description: Work item trees
        schema:
          type: object
          properties:
            message:
              type: string
            total_completed_work:
              type: number
            work_items:
              type: array
              items:
                type: object
      400:
        description: Missing configuration
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return list_work_items("completed")


@app.route('/azdo-tree/list-active', methods=['POST'])
def list_active_api():
    """
    List active Tasks assigned to the user, as trees with rolled up completed work
    ---
    parameters:
      - in: body
        name: body
        required: false
        schema:
          type: object
          properties:
            period:
              type: string
              description: Only items changed since day, week or month start (default no limit)
            leaf_kind:
              type: string
    responses:
      200:
        description: Work item trees
      400:
        description: Missing configuration
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return list_work_items("active")


@app.route('/azdo-tree/list-all', methods=['POST'])
def list_all_api():
    """
    List completed and active Tasks assigned to the user, merged by root work item
    ---
    parameters:
      - in: body
        name: body
        required: false
        schema:
          type: object
          properties:
            period:
              type: string
              description: day, week or month (default day)
            leaf_kind:
              type: string
    responses:
      200:
        description: Work item trees
      400:
        description: Missing configuration
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return list_work_items("all")


@app.route('/azdo-tree/report', methods=['POST'])
def generate_report_api():
    """
    Generate an Excel work item tree report and upload it to Azure Blob Storage
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - storage_account_name
            - container_name
            - storage_account_sas
          properties:
            mode:
              type: string
              description: completed, active or all (default completed)
            period:
              type: string
              description: day, week or month (default day)
            leaf_kind:
              type: string
            output_file_name:
              type: string
              description: Optional custom filename for the output report (without extension)
            storage_account_name:
              type: string
              description: Azure Storage account name
            container_name:
              type: string
              description: Azure Storage container name
            storage_account_sas:
              type: string
              description: SAS token for Azure Storage authentication
    responses:
      200:
        description: Report generated successfully
        headers:
          file_name:
            type: string
            description: The filename of the generated report
      400:
        description: Bad request - missing required parameters
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return generate_report()


@app.route('/azdo-tree/work-items', methods=['POST'])
def create_work_item_api():
    """
    Create a work item
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - title
            - type
          properties:
            title:
              type: string
            type:
              type: string
              description: Work item type, e.g. Task or Bug
            assigned_to:
              type: string
              description: Defaults to the configured user
    responses:
      201:
        description: Work item created
      400:
        description: Bad request
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return _handle_errors(_create_work_item, "creating work item")


@app.route('/azdo-tree/work-items/<int:work_item_id>', methods=['PATCH'])
def update_work_item_api(work_item_id):
    """
    Update title, state or assignee of a work item
    ---
    parameters:
      - in: path
        name: work_item_id
        type: integer
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            title:
              type: string
            state:
              type: string
            assigned_to:
              type: string
    responses:
      200:
        description: Work item updated
      400:
        description: Nothing to update
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    return _handle_errors(lambda: _update_work_item(work_item_id), "updating work item")


def _request_data() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RequestValidationError("Request body must be a JSON object.")
    return data


def _resolve_config(data: dict):
    """Configured settings overlaid with any credentials passed in the body"""
    config = apply_request_overrides(load_config(required=False), data)
    if not config.is_complete:
        raise AzureDevOpsConfigurationError(
            f"Missing Azure DevOps settings: {', '.join(config.missing_fields())}. "
            "Configure the service or provide AZURE_PAT, ORGANIZATION, PROJECT and USER_EMAIL."
        )
    return config


def _fetch_forest(azure_devops: AzureDevOpsService, mode: str, data: dict):
    period = data.get('period')
    if mode == "completed":
        return azure_devops.list_completed_work_item_tree(resolve_wiql_period(period))
    if mode == "active":
        return azure_devops.list_active_work_item_tree(resolve_wiql_period(period) if period else None)
    return azure_devops.list_all_work_item_tree(resolve_wiql_period(period))


def _handle_errors(handler, action: str):
    try:
        return handler()
    except (AzureDevOpsConfigurationError, RequestValidationError) as e:
        logger.error(f"Bad request while {action}: {str(e)}")
        return jsonify({"error": str(e), "status": "bad_request"}), 400
    except AzureDevOpsAuthenticationError:
        logger.error("Authentication failed with Azure DevOps")
        return jsonify({
            "error": "Invalid Azure DevOps PAT token. Please check your credentials.",
            "status": "unauthorized"
        }), 401
    except Exception:
        logger.exception(f"Error {action}")
        return jsonify({
            "error": f"An error occurred while {action}. Please try again.",
            "status": "error"
        }), 500


def list_work_items(mode: str):
    """Shared implementation of the list endpoints"""
    def handler():
        data = _request_data()
        logger.info(f"Received list-{mode} request")
        config = _resolve_config(data)
        leaf_kind = data.get('leaf_kind') or DEFAULT_LEAF_KIND

        azure_devops = AzureDevOpsService.from_config(config)
        forest = _fetch_forest(azure_devops, mode, data)

        if not forest:
            logger.warning("No work items found")
            return jsonify({
                "message": "No work items found.",
                "total_completed_work": 0,
                "work_items": []
            }), 200

        total = compute_rollups(forest, leaf_kind)
        logger.info(f"Returning {len(forest)} trees, total completed work {total}")
        return jsonify({
            "message": f"Found {len(forest)} work item trees.",
            "total_completed_work": total,
            "work_items": forest_to_dict(forest, config.organization, config.project)
        }), 200

    return _handle_errors(handler, f"listing {mode} work items")


def generate_report():
    """Build the tree workbook and upload it"""
    def handler():
        data = _request_data()
        logger.info("Received report generation request")

        mode = (data.get('mode') or "completed").lower()
        if mode not in LIST_MODES:
            raise RequestValidationError(f"Invalid mode '{mode}'. Valid modes are: {list(LIST_MODES)}")

        storage_account_name = data.get('storage_account_name')
        container_name = data.get('container_name')
        storage_account_sas = data.get('storage_account_sas')
        if not all([storage_account_name, container_name, storage_account_sas]):
            raise RequestValidationError(
                "Missing storage parameters. Please provide storage_account_name, container_name, and storage_account_sas."
            )

        config = _resolve_config(data)
        leaf_kind = data.get('leaf_kind') or DEFAULT_LEAF_KIND
        azure_devops = AzureDevOpsService.from_config(config)
        forest = _fetch_forest(azure_devops, mode, data)

        if not forest:
            logger.warning("No work items found, skipping report")
            response = jsonify({"message": "No work items found.", "file_url": None, "total_completed_work": 0})
            response.headers['file_name'] = ""
            return response, 200

        total = compute_rollups(forest, leaf_kind)

        with tempfile.NamedTemporaryFile(suffix='.xlsx', delete=False) as temp_file:
            temp_file_path = temp_file.name

        try:
            ReportService().build_excel_workbook(
                forest,
                total,
                temp_file_path,
                config.organization,
                config.project,
                title=f"Work Items ({mode}) - Total Completed: {total}"
            )

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            blob_name = safe_blob_name(data.get('output_file_name'), f"azdo_work_items_{mode}_{timestamp}")
            storage_service = AzureBlobStorageService(storage_account_name, container_name, storage_account_sas)
            file_url = storage_service.upload_file(temp_file_path, blob_name)
        finally:
            os.unlink(temp_file_path)

        logger.info("Report generation completed successfully")
        response = jsonify({
            "message": "Report generated successfully",
            "file_url": file_url,
            "total_completed_work": total
        })
        response.headers['file_name'] = blob_name
        return response, 200

    return _handle_errors(handler, "generating the report")


def _create_work_item():
    data = _request_data()
    title = data.get('title')
    work_item_type = data.get('type')
    if not title or not work_item_type:
        raise RequestValidationError("Missing required parameters. Please provide title and type.")

    config = _resolve_config(data)
    azure_devops = AzureDevOpsService.from_config(config)
    work_item = azure_devops.create_work_item(title, work_item_type, data.get('assigned_to') or config.user_email)
    return jsonify(_work_item_response(work_item, config)), 201


def _update_work_item(work_item_id: int):
    data = _request_data()
    if all(data.get(field) is None for field in UPDATABLE_FIELDS):
        raise RequestValidationError("Nothing to update. Provide title, state or assigned_to.")

    config = _resolve_config(data)
    azure_devops = AzureDevOpsService.from_config(config)
    work_item = azure_devops.update_work_item(
        work_item_id,
        title=data.get('title'),
        state=data.get('state'),
        assigned_to=data.get('assigned_to')
    )
    return jsonify(_work_item_response(work_item, config)), 200


def _work_item_response(work_item, config) -> dict:
    return node_to_dict(WorkItemTreeNode(item=work_item), config.organization, config.project)


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False)
