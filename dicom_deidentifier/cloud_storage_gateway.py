# Copyright 2023 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""Issues V4 signed URLs for objects in Cloud Storage."""
import datetime
import json
from typing import Any, Callable, Optional

from google.cloud import storage as gcs
from google.oauth2 import service_account

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_flags
from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_types
from dicom_deidentifier import healthcare_api_const
from shared_libs.logging_lib import cloud_logging_client

SIGNED_URL_EXPIRATION = datetime.timedelta(minutes=15)
SIGNED_URL_CONTENT_TYPE = 'application/octet-stream'
SIGNED_URL_VERSION = 'v4'

# Signs blob; called with generate_signed_url keyword arguments.
Signer = Callable[..., str]


def _sign_blob(blob: gcs.Blob, **kwargs: Any) -> str:
  return blob.generate_signed_url(**kwargs)


def load_service_account_credentials(
    path: str,
) -> service_account.Credentials:
  """Reads service account key file.

  Args:
    path: Path to service account JSON key.

  Returns:
    Service account credentials.

  Raises:
    CredentialResolutionError: Key path undefined, unreadable or invalid.
  """
  if not path:
    raise deid_errors.CredentialResolutionError(
        f'{deid_flags.SERVICE_ACCOUNT_ENV} is not defined.'
    )
  try:
    with open(path, 'rt') as infile:
      key_info = json.load(infile)
  except OSError as exp:
    raise deid_errors.CredentialResolutionError(
        f'Could not read service account key {path}: {exp}'
    ) from exp
  except json.JSONDecodeError as exp:
    raise deid_errors.CredentialResolutionError(
        f'Service account key {path} is not JSON.'
    ) from exp
  try:
    return service_account.Credentials.from_service_account_info(
        key_info, scopes=[healthcare_api_const.CLOUD_PLATFORM_SCOPE]
    )
  except (ValueError, KeyError, TypeError) as exp:
    raise deid_errors.CredentialResolutionError(
        f'Service account key {path} is invalid: {exp}'
    ) from exp


class CloudStorageGateway(deid_interfaces.UrlSigner):
  """Signs URLs with the key named by the SERVICE_ACCOUNT value."""

  def __init__(
      self,
      storage_client: Optional[gcs.Client] = None,
      signer: Signer = _sign_blob,
      service_account_path: Callable[[], str] = deid_flags.service_account_path,
  ):
    self._storage_client = storage_client
    self._signer = signer
    self._service_account_path = service_account_path

  def _client_for(
      self, credentials: service_account.Credentials
  ) -> gcs.Client:
    """Returns injected client or one bound to the signing key.

    Blob.generate_signed_url resolves the API endpoint from the blob's client
    even when signing credentials are passed explicitly.
    """
    if self._storage_client is not None:
      return self._storage_client
    return gcs.Client(project=credentials.project_id, credentials=credentials)

  def generate_presigned_bucket_url(
      self,
      bucket: deid_types.CloudStorageBucket,
      obj: deid_types.CloudStorageObject,
      method: str,
  ) -> deid_types.SignedBucketURL:
    """Returns URL granting method on one object for SIGNED_URL_EXPIRATION.

    Args:
      bucket: Bucket holding object.
      obj: Object URL grants access to.
      method: HTTP method URL is scoped to.

    Returns:
      Signed URL.

    Raises:
      CredentialResolutionError: Signing key cannot be resolved.
      DeidError: Signing failed.
    """
    log_struct = {'bucket': bucket.name, 'object': obj.name, 'method': method}
    credentials = load_service_account_credentials(self._service_account_path())
    blob = gcs.Bucket(
        client=self._client_for(credentials), name=bucket.name
    ).blob(obj.name)
    try:
      url = self._signer(
          blob,
          version=SIGNED_URL_VERSION,
          expiration=SIGNED_URL_EXPIRATION,
          method=method,
          content_type=SIGNED_URL_CONTENT_TYPE,
          credentials=credentials,
      )
    except Exception as exp:
      cloud_logging_client.error('Failed to sign URL.', log_struct, exp)
      raise deid_errors.DeidError(
          deid_errors.ErrorKind.INTERNAL, f'storage.SignedURL: {exp}'
      ) from exp
    cloud_logging_client.debug('Signed URL generated.', log_struct)
    return deid_types.SignedBucketURL(url=url)
