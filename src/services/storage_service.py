import logging
import os
from azure.storage.blob import BlobServiceClient
from typing import Optional

logger = logging.getLogger(__name__)


def safe_blob_name(output_file_name: Optional[str], default_name: str, extension: str = ".xlsx") -> str:
    """Build a blob name from a user supplied file name, keeping only safe characters"""
    if output_file_name:
        safe_filename = ''.join(c for c in output_file_name if c.isalnum() or c in ['-', '_', '.'])
        if safe_filename:
            return f"{safe_filename}{extension}"
    return f"{default_name}{extension}"


class AzureBlobStorageService:
    def __init__(self, account_name: str, container_name: str, sas_token: str):
        self.account_name = account_name
        self.container_name = container_name
        self.sas_token = sas_token
        self.account_url = f"https://{account_name}.blob.core.windows.net"

    def upload_file(self, file_path: str, blob_name: Optional[str] = None) -> str:
        """
        Upload a report file to Azure Blob Storage

        Args:
            file_path: Local path to the file
            blob_name: Name to give the blob, defaults to the file's base name

        Returns:
            URL to the uploaded blob
        """
        if blob_name is None:
            blob_name = os.path.basename(file_path)

        try:
            blob_service_client = BlobServiceClient(account_url=self.account_url, credential=self.sas_token)
            blob_client = blob_service_client.get_container_client(self.container_name).get_blob_client(blob_name)

            with open(file_path, "rb") as data:
                blob_client.upload_blob(data, overwrite=True)

            logger.info(f"Report uploaded to: {blob_client.url}")
            return blob_client.url

        except Exception as e:
            logger.exception(f"Error uploading {blob_name} to container {self.container_name}: {str(e)}")
            raise
