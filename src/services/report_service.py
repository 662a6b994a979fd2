import logging
import xlsxwriter
import re
from typing import Dict, List, Any, Optional

from services.models import WorkItem, WorkItemTreeNode

logger = logging.getLogger(__name__)

# ================================================================================
# DISPLAY CONFIGURATION SECTION
# ================================================================================

# Types and states are free text in Azure DevOps; unknown values get the default colour
DEFAULT_COLOR = '#000000'

TYPE_COLORS = {
    'Task': '#B8860B',
    'Feature': '#800080',
    'Epic': '#FF8C00',
    'Bug': '#C00000',
    'Tech': '#808080',
    'Impediment': '#FF69B4',
}

STATE_COLORS = {
    'Done': '#008000',
    'Closed': '#008000',
    'Active': '#B8860B',
    'Committed': '#008B8B',
    'Ready': '#FF8C00',
    'To Do': '#808080',
    'In Progress': '#008B8B',
    'Removed': '#C00000',
    'Implemented': '#FF69B4',
}

TREE_COLUMNS = [
    {'field': 'id', 'header': 'ID', 'width': 10},
    {'field': 'title', 'header': 'Title', 'width': 60},
    {'field': 'type', 'header': 'Type', 'width': 15},
    {'field': 'state', 'header': 'State', 'width': 15},
    {'field': 'assigned_to', 'header': 'Assigned To', 'width': 25},
    {'field': 'completed_work', 'header': 'Completed Work', 'width': 15},
]

# Excel supports outline levels 0-7
MAX_OUTLINE_LEVEL = 7
INDENT = '    '

# ================================================================================
# END DISPLAY CONFIGURATION SECTION
# ================================================================================


def type_color(work_item_type: str) -> str:
    return TYPE_COLORS.get(work_item_type, DEFAULT_COLOR)


def state_color(state: str) -> str:
    return STATE_COLORS.get(state, DEFAULT_COLOR)


def work_item_url(organization: str, project: str, work_item_id: int) -> str:
    return f"https://dev.azure.com/{organization}/{project}/_workitems/edit/{work_item_id}"


def _item_to_dict(item: WorkItem, organization: str, project: str) -> Dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "state": item.state,
        "assigned_to": item.assigned_to,
        "type": item.type,
        "completed_work": item.completed_work,
        "url": work_item_url(organization, project, item.id),
        "children": [],
    }


def node_to_dict(node: WorkItemTreeNode, organization: str, project: str) -> Dict[str, Any]:
    root = _item_to_dict(node.item, organization, project)
    stack = [(node, root)]
    while stack:
        current, current_dict = stack.pop()
        for child in current.children:
            child_dict = _item_to_dict(child.item, organization, project)
            current_dict["children"].append(child_dict)
            stack.append((child, child_dict))
    return root


def forest_to_dict(forest: List[WorkItemTreeNode], organization: str, project: str) -> List[Dict[str, Any]]:
    """Serialize a forest to nested JSON-ready dicts"""
    return [node_to_dict(root, organization, project) for root in forest]


class ReportService:
    def __init__(self):
        # Cell formats are per workbook, cached by (kind, colour)
        self._formats: Dict[Any, Any] = {}

    def _clean_html_content(self, content: str) -> str:
        """Remove HTML tags from content"""
        if not content or not isinstance(content, str):
            return content or ""

        clean_content = re.sub(r'<[^>]+>', '', content)
        clean_content = ' '.join(clean_content.split())
        return clean_content

    def _colored_format(self, workbook, color: str):
        key = ('color', color)
        if key not in self._formats:
            self._formats[key] = workbook.add_format({'border': 1, 'bold': True, 'font_color': color})
        return self._formats[key]

    def build_excel_workbook(self, forest: List[WorkItemTreeNode], total_completed_work: float,
                             output_path: str, organization: str, project: str,
                             title: Optional[str] = None) -> None:
        """
        Build Excel workbook with the work item tree

        Args:
            forest: Root nodes, already rolled up
            total_completed_work: Grand total reported in the TOTAL row
            output_path: Path where the Excel file will be saved
            organization: Azure DevOps organization, used for work item links
            project: Azure DevOps project, used for work item links
            title: Optional heading written above the table
        """
        try:
            self._formats = {}
            workbook = xlsxwriter.Workbook(output_path)

            header_format = workbook.add_format({
                'bold': True,
                'bg_color': '#D0D0D0',
                'border': 1
            })
            cell_format = workbook.add_format({'border': 1})
            number_format = workbook.add_format({'border': 1, 'num_format': '0.##'})
            total_format = workbook.add_format({'border': 1, 'bold': True, 'num_format': '0.##'})

            worksheet = workbook.add_worksheet("Work Items")
            worksheet.outline_settings(True, False, True, False)

            row = 0
            if title:
                worksheet.write(row, 0, title, workbook.add_format({'bold': True, 'font_size': 14}))
                row += 2

            for col_idx, col_config in enumerate(TREE_COLUMNS):
                worksheet.set_column(col_idx, col_idx, col_config['width'])
                worksheet.write(row, col_idx, col_config['header'], header_format)
            row += 1

            formats = {
                'cell': cell_format,
                'number': number_format,
            }
            row = self._write_tree_rows(workbook, worksheet, forest, row, organization, project, formats)

            worksheet.write(row + 1, 0, "TOTAL", total_format)
            worksheet.write(row + 1, len(TREE_COLUMNS) - 1, total_completed_work, total_format)

            workbook.close()
            logger.info(f"Excel report saved to {output_path}")

        except Exception as e:
            logger.exception(f"Error building Excel workbook: {str(e)}")
            raise

    def _write_tree_rows(self, workbook, worksheet, forest: List[WorkItemTreeNode], row: int,
                         organization: str, project: str, formats: Dict[str, Any]) -> int:
        """Write every node in pre-order, one row each, returning the next free row"""
        stack = [(root, 0) for root in reversed(forest)]
        while stack:
            node, depth = stack.pop()
            self._write_node_row(workbook, worksheet, node, row, depth, organization, project, formats)
            row += 1
            stack.extend((child, depth + 1) for child in reversed(node.children))
        return row

    def _write_node_row(self, workbook, worksheet, node: WorkItemTreeNode, row: int, depth: int,
                        organization: str, project: str, formats: Dict[str, Any]) -> None:
        item = node.item
        cell_format = formats['cell']

        worksheet.set_row(row, None, None, {'level': min(depth, MAX_OUTLINE_LEVEL)})
        worksheet.write_url(row, 0, work_item_url(organization, project, item.id),
                            cell_format, str(item.id))
        worksheet.write(row, 1, INDENT * depth + self._clean_html_content(item.title), cell_format)
        worksheet.write(row, 2, item.type, self._colored_format(workbook, type_color(item.type)))
        worksheet.write(row, 3, item.state, self._colored_format(workbook, state_color(item.state)))
        worksheet.write(row, 4, item.assigned_to, cell_format)
        if item.completed_work is None:
            # Absent work renders blank, never 0
            worksheet.write_blank(row, 5, None, cell_format)
        else:
            worksheet.write_number(row, 5, item.completed_work, formats['number'])
