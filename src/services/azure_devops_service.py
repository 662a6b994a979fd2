import requests
import base64
import json
import logging
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Any, Optional, Tuple

from services.models import WorkItem, WorkItemLink, WorkItemTreeNode
from services.tree_service import build_forest, merge_forests

logger = logging.getLogger(__name__)

WIQL_PERIODS = {
    "day": "@StartOfDay",
    "week": "@StartOfWeek",
    "month": "@StartOfMonth",
}
DEFAULT_WIQL_PERIOD = "@StartOfDay"

ACTIVE_STATES = ["Active", "In Progress", "Committed"]

# Azure DevOps caps the work items batch endpoint at 200 ids per request
DETAILS_BATCH_SIZE = 200


class AzureDevOpsAuthenticationError(Exception):
    """Custom exception for Azure DevOps authentication errors"""
    pass


class AzureDevOpsServiceError(Exception):
    """Raised when Azure DevOps returns an error or an unreadable response"""
    pass


def resolve_wiql_period(period: Optional[str]) -> str:
    """Map day/week/month to a WIQL date macro, defaulting to @StartOfDay"""
    return WIQL_PERIODS.get((period or "").strip().lower(), DEFAULT_WIQL_PERIOD)


def _escape(value: str) -> str:
    """Escape single quotes by doubling them for WIQL string literals"""
    return (value or "").replace("'", "''")


class AzureDevOpsService:
    def __init__(self, pat: str, organization: str, project: str, user_email: str = ""):
        self.organization = organization
        self.project = project
        self.user_email = user_email
        # URL-encode project name to handle spaces/special characters
        encoded_project = urllib.parse.quote(project)
        self.base_url = f"https://dev.azure.com/{organization}/{encoded_project}/_apis"
        encoded_pat = self._encode_pat(pat)
        self.headers = {
            "Authorization": f"Basic {encoded_pat}",
            "Content-Type": "application/json"
        }
        self.api_version = "7.0"

    @classmethod
    def from_config(cls, config) -> "AzureDevOpsService":
        return cls(config.personal_access_token, config.organization, config.project, config.user_email)

    def _encode_pat(self, pat: str) -> str:
        """Encode the Personal Access Token for use in the Authorization header"""
        # Azure DevOps expects "username:pat" where username can be empty
        token = f":{pat}"
        return base64.b64encode(token.encode()).decode('utf-8')

    def _check_response(self, response: requests.Response, action: str) -> Dict[str, Any]:
        """
        Raise for failed responses and return the parsed JSON body

        Args:
            response: Response from Azure DevOps
            action: Short description of the call, used in log and error messages
        """
        if response.status_code == 401:
            logger.error("Azure DevOps authentication failed - Invalid PAT token")
            raise AzureDevOpsAuthenticationError("Invalid Azure DevOps PAT token. Please check your credentials.")

        if not response.ok:
            error_msg = f"Azure DevOps {action} failed: {response.status_code} - {response.text}"
            logger.error(error_msg)
            raise AzureDevOpsServiceError(error_msg)

        try:
            return response.json()
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse Azure DevOps response: {response.text}")
            raise AzureDevOpsServiceError("Failed to parse Azure DevOps response.") from e

    # ------------------------------------------------------------------
    # WIQL queries
    # ------------------------------------------------------------------

    def _build_link_query(self, target_clauses: List[str]) -> str:
        """Build a hierarchy WorkItemLinks query for Tasks assigned to the configured user"""
        clauses = [f"[Target].[System.AssignedTo] = '{_escape(self.user_email)}'"]
        clauses.extend(target_clauses)
        clauses.append("[Target].[System.WorkItemType] = 'Task'")
        target_filter = "\n                    AND ".join(clauses)
        return f"""SELECT [System.Id]
                FROM WorkItemLinks
                WHERE
                  (
                    {target_filter}
                  )
                  AND [System.Links.LinkType] = 'System.LinkTypes.Hierarchy-Forward'
                  AND [Source].[System.WorkItemType] <> ''"""

    def build_completed_query(self, wiql_period: str = DEFAULT_WIQL_PERIOD) -> str:
        return self._build_link_query([
            "[Target].[System.State] = 'Done'",
            f"[Target].[Microsoft.VSTS.Common.ClosedDate] >= {wiql_period}",
        ])

    def build_active_query(self, wiql_period: Optional[str] = None) -> str:
        states = ", ".join(f"'{_escape(state)}'" for state in ACTIVE_STATES)
        clauses = [f"[Target].[System.State] IN ({states})"]
        if wiql_period:
            clauses.append(f"[Target].[System.ChangedDate] >= {wiql_period}")
        return self._build_link_query(clauses)

    def query_work_item_links(self, wiql_query: str) -> Tuple[List[int], List[WorkItemLink]]:
        """
        Run a WorkItemLinks WIQL query

        Returns:
            (ids, links): every id seen as a source or target in first-seen
            order, and one link per relation (either end may be None)
        """
        logger.debug(f"Executing WIQL query: {wiql_query}")
        response = requests.post(
            f"{self.base_url}/wit/wiql?api-version={self.api_version}",
            headers=self.headers,
            json={"query": wiql_query}
        )
        data = self._check_response(response, "WIQL query")

        work_item_ids: Dict[int, None] = {}
        links = []
        for relation in data.get("workItemRelations", []) or []:
            source_id = self._relation_end_id(relation.get("source"))
            target_id = self._relation_end_id(relation.get("target"))
            for item_id in (source_id, target_id):
                if item_id is not None:
                    work_item_ids.setdefault(item_id, None)
            links.append(WorkItemLink(source_id=source_id, target_id=target_id))

        logger.info(f"WIQL query returned {len(links)} relations over {len(work_item_ids)} work items")
        return list(work_item_ids), links

    @staticmethod
    def _relation_end_id(end: Any) -> Optional[int]:
        if isinstance(end, dict) and end.get("id") is not None:
            return int(end["id"])
        return None

    # ------------------------------------------------------------------
    # Work item details
    # ------------------------------------------------------------------

    def get_work_items_details(self, work_item_ids: List[int]) -> Dict[int, WorkItem]:
        """
        Get detailed information for multiple work items, keyed by id in response order
        """
        work_items: Dict[int, WorkItem] = {}

        for i in range(0, len(work_item_ids), DETAILS_BATCH_SIZE):
            batch_ids = work_item_ids[i:i + DETAILS_BATCH_SIZE]
            ids_string = ",".join(map(str, batch_ids))
            url = f"{self.base_url}/wit/workitems?ids={ids_string}&api-version={self.api_version}"
            logger.info(f"GET work item details for {len(batch_ids)} ids")

            response = requests.get(url, headers=self.headers)
            batch_data = self._check_response(response, "work item details")

            for raw in batch_data.get("value", []):
                work_item = self.parse_work_item(raw)
                work_items[work_item.id] = work_item

        return work_items

    @staticmethod
    def parse_work_item(raw: Dict[str, Any]) -> WorkItem:
        """Transform a work item response into a WorkItem"""
        fields = raw.get("fields", {}) or {}
        assigned = fields.get("System.AssignedTo")
        if isinstance(assigned, dict):
            assigned_to = assigned.get("displayName", "") or ""
        else:
            assigned_to = assigned or ""

        completed_work = fields.get("Microsoft.VSTS.Scheduling.CompletedWork")

        return WorkItem(
            id=int(raw["id"]),
            title=fields.get("System.Title", "") or "",
            state=fields.get("System.State", "") or "",
            assigned_to=assigned_to,
            type=fields.get("System.WorkItemType", "") or "",
            completed_work=float(completed_work) if completed_work is not None else None,
        )

    # ------------------------------------------------------------------
    # Trees
    # ------------------------------------------------------------------

    def _fetch_tree(self, wiql_query: str) -> List[WorkItemTreeNode]:
        work_item_ids, links = self.query_work_item_links(wiql_query)
        if not work_item_ids:
            logger.info("No work items found matching the criteria")
            return []

        work_items = self.get_work_items_details(work_item_ids)
        forest = build_forest(work_items, links)
        logger.info(f"Built {len(forest)} trees from {len(work_items)} work items")
        return forest

    def list_completed_work_item_tree(self, wiql_period: str = DEFAULT_WIQL_PERIOD) -> List[WorkItemTreeNode]:
        """Tasks closed as Done since the period start, with their parents"""
        logger.info(f"Fetching completed work items since {wiql_period}...")
        return self._fetch_tree(self.build_completed_query(wiql_period))

    def list_active_work_item_tree(self, wiql_period: Optional[str] = None) -> List[WorkItemTreeNode]:
        """Tasks currently in progress, with their parents"""
        logger.info("Fetching active work items...")
        return self._fetch_tree(self.build_active_query(wiql_period))

    def list_all_work_item_tree(self, wiql_period: str = DEFAULT_WIQL_PERIOD) -> List[WorkItemTreeNode]:
        """
        Completed and active trees fetched concurrently, merged by root id

        Completed roots win when both pipelines return the same id.
        """
        with ThreadPoolExecutor(max_workers=2) as executor:
            completed_future = executor.submit(self.list_completed_work_item_tree, wiql_period)
            active_future = executor.submit(self.list_active_work_item_tree, wiql_period)
            completed = completed_future.result()
            active = active_future.result()

        return merge_forests(completed, active)

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    def _patch_document(self, title: Optional[str] = None, state: Optional[str] = None,
                        assigned_to: Optional[str] = None) -> List[Dict[str, Any]]:
        field_values = {
            "System.Title": title,
            "System.State": state,
            "System.AssignedTo": assigned_to,
        }
        return [
            {"op": "add", "path": f"/fields/{field_name}", "value": value}
            for field_name, value in field_values.items() if value is not None
        ]

    def create_work_item(self, title: str, work_item_type: str, assigned_to: str) -> WorkItem:
        """Create a work item of the given type"""
        encoded_type = urllib.parse.quote(work_item_type)
        url = f"{self.base_url}/wit/workitems/${encoded_type}?api-version={self.api_version}"
        logger.info(f"Creating {work_item_type} '{title}' assigned to {assigned_to}")

        response = requests.post(
            url,
            headers={**self.headers, "Content-Type": "application/json-patch+json"},
            json=self._patch_document(title=title, assigned_to=assigned_to)
        )
        return self.parse_work_item(self._check_response(response, "work item create"))

    def update_work_item(self, work_item_id: int, title: Optional[str] = None,
                         state: Optional[str] = None, assigned_to: Optional[str] = None) -> WorkItem:
        """Update title, state and/or assignee of an existing work item"""
        document = self._patch_document(title=title, state=state, assigned_to=assigned_to)
        if not document:
            raise ValueError("Nothing to update. Provide title, state or assigned_to.")

        url = f"{self.base_url}/wit/workitems/{work_item_id}?api-version={self.api_version}"
        logger.info(f"Updating work item {work_item_id}: {[op['path'] for op in document]}")

        response = requests.patch(
            url,
            headers={**self.headers, "Content-Type": "application/json-patch+json"},
            json=document
        )
        return self.parse_work_item(self._check_response(response, "work item update"))
