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
"""DICOM store operations against the Cloud Healthcare API.

Store lifecycle, de-identify, import and export requests are made with the
Healthcare API discovery client. Instances are uploaded with DICOMweb
STOW-RS requests.
"""
import re
from typing import Any, Dict, List, Mapping, Optional

import google.auth
import google.auth.credentials
import google.auth.exceptions
import google.auth.transport.requests
from googleapiclient import discovery
import googleapiclient.errors
import requests

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_types
from dicom_deidentifier import healthcare_api_const
from dicom_deidentifier import operation_poller
from shared_libs.logging_lib import cloud_logging_client

# gs://bucket/path; path may contain *, ** and ? wildcards.
_GCS_URI_RE = re.compile(r'gs://[^/*?]+(/.*)?')


def _validate_gcs_uri(uri: str) -> None:
  if not _GCS_URI_RE.fullmatch(uri):
    raise deid_errors.DeidError(
        deid_errors.ErrorKind.INVALID,
        f'Expecting GCS URI formatted gs://bucket/path; received {uri!r}.',
    )


class HealthcareGateway(deid_interfaces.DicomStoreLifecycle):
  """DICOM stores within a single Healthcare API dataset."""

  def __init__(
      self,
      dataset: deid_types.DatasetPath,
      poll_policy: operation_poller.PollPolicy,
      healthcare_client: Optional[discovery.Resource] = None,
      credentials: Optional[google.auth.credentials.Credentials] = None,
      base_url: Optional[str] = None,
  ):
    self._dataset = dataset
    self._poll_policy = poll_policy
    self._healthcare_client = healthcare_client
    self._auth_credentials = credentials
    self._base_url = base_url

  @property
  def dataset(self) -> deid_types.DatasetPath:
    return self._dataset

  @property
  def base_url(self) -> str:
    if self._base_url is None:
      self._base_url = healthcare_api_const.HEALTHCARE_API_BASE_URL_FLG.value
    return self._base_url.rstrip('/')

  @property
  def _client(self) -> discovery.Resource:
    if self._healthcare_client is None:
      self._healthcare_client = discovery.build(
          healthcare_api_const.HEALTHCARE_SERVICE_NAME,
          healthcare_api_const.HEALTHCARE_API_VERSION,
          discoveryServiceUrl=healthcare_api_const.get_healthcare_api_discovery_url(
              self.base_url
          ),
          cache_discovery=False,
      )
    return self._healthcare_client

  def _dicom_stores(self) -> discovery.Resource:
    return self._client.projects().locations().datasets().dicomStores()

  def _execute(self, operation: str, request: Any) -> Dict[str, Any]:
    try:
      return request.execute()
    except googleapiclient.errors.HttpError as exp:
      cloud_logging_client.error(
          'Healthcare API request failed.', {'operation': operation}, exp
      )
      raise deid_errors.from_http_error(operation, exp) from exp

  def _add_auth_to_header(self, msg_headers: Dict[str, str]) -> Dict[str, str]:
    """Refreshes credentials if needed and adds bearer token to headers."""
    if self._auth_credentials is None:
      self._auth_credentials = google.auth.default(
          scopes=[healthcare_api_const.CLOUD_PLATFORM_SCOPE]
      )[0]
    if not self._auth_credentials.valid:
      self._auth_credentials.refresh(google.auth.transport.requests.Request())
    self._auth_credentials.apply(msg_headers)
    return msg_headers

  def store_ref(self, store_id: str) -> deid_types.DicomStore:
    """Returns reference to a store in the dataset; no remote call."""
    return deid_types.DicomStore(
        store_id=store_id, name=self._dataset.store_name(store_id)
    )

  def dicomweb_url(self, store: deid_types.DicomStore) -> str:
    return f'{self.base_url}/{store.name}/dicomWeb'

  def create_dicom_store(self, store_id: str) -> deid_types.DicomStore:
    response = self._execute(
        'dicomStores.create',
        self._dicom_stores().create(
            parent=self._dataset.name, dicomStoreId=store_id, body={}
        ),
    )
    store = deid_types.DicomStore.from_name(
        response.get('name', self._dataset.store_name(store_id))
    )
    cloud_logging_client.info('Created DICOM store.', {'store': store.name})
    return store

  def delete_dicom_store(self, store_id: str) -> None:
    name = self._dataset.store_name(store_id)
    self._execute('dicomStores.delete', self._dicom_stores().delete(name=name))
    cloud_logging_client.info('Deleted DICOM store.', {'store': name})

  def get_dicom_store_list(self) -> List[deid_types.DicomStore]:
    stores = []
    page_token = None
    while True:
      params = {'parent': self._dataset.name}
      if page_token:
        params['pageToken'] = page_token
      response = self._execute(
          'dicomStores.list', self._dicom_stores().list(**params)
      )
      for store in response.get('dicomStores', []):
        stores.append(deid_types.DicomStore.from_name(store['name']))
      page_token = response.get('nextPageToken')
      if not page_token:
        return stores

  def create_dicom_instances(
      self, store: deid_types.DicomStore, *dicoms: deid_types.Dicom
  ) -> None:
    """Uploads instances to store in order.

    Upload stops at the first instance which cannot be read or stored.
    Instances uploaded before the failure are not removed.

    Args:
      store: Store to upload to.
      *dicoms: Instances to upload.

    Raises:
      DicomIngestError: Instance could not be read or stored; error lists
        instances already stored.
    """
    url = f'{self.dicomweb_url(store)}/studies'
    uploaded = []
    for dicom in dicoms:
      log_struct = {'dicom_file': dicom.path, 'dicom_store_web': url}
      try:
        with open(dicom.path, 'rb') as infile:
          data = infile.read()
      except OSError as exp:
        cloud_logging_client.error(
            'Error reading DICOM instance.', log_struct, exp
        )
        raise deid_errors.DicomIngestError(
            f'ReadFile {dicom.path}: {exp}', uploaded, dicom
        ) from exp
      try:
        headers = self._add_auth_to_header(
            {'Content-Type': healthcare_api_const.DICOM_CONTENT_TYPE}
        )
        response = requests.post(url, data=data, headers=headers)
        response.raise_for_status()
      except (
          requests.RequestException,
          google.auth.exceptions.GoogleAuthError,
      ) as exp:
        cloud_logging_client.error(
            'Error uploading DICOM to DICOM store.', log_struct, exp
        )
        raise deid_errors.DicomIngestError(
            f'dicomWeb.storeInstances {dicom.path}: {exp}', uploaded, dicom
        ) from exp
      uploaded.append(dicom)
      cloud_logging_client.info('Uploaded DICOM to DICOM store.', log_struct)

  def trigger_deidentify(
      self, source: deid_types.DicomStore, destination: deid_types.DicomStore
  ) -> str:
    if source.name == destination.name:
      raise deid_errors.DeidError(
          deid_errors.ErrorKind.INVALID,
          'De-identification destination must differ from source store.',
      )
    body = {
        'destinationStore': destination.name,
        'config': {
            'dicom': {
                'filterProfile': healthcare_api_const.DEID_FILTER_PROFILE
            },
            'image': {
                'textRedactionMode': (
                    healthcare_api_const.DEID_TEXT_REDACTION_MODE
                )
            },
        },
    }
    response = self._execute(
        'dicomStores.deidentify',
        self._dicom_stores().deidentify(sourceStore=source.name, body=body),
    )
    operation_name = response.get('name')
    if not operation_name:
      raise deid_errors.DeidError(
          deid_errors.ErrorKind.INTERNAL,
          'dicomStores.deidentify: response missing operation name.',
      )
    cloud_logging_client.info(
        'De-identification requested.',
        {
            'source_store': source.name,
            'destination_store': destination.name,
            'operation_name': operation_name,
        },
    )
    return operation_name

  def deidentify_dicom_store(
      self,
      source: deid_types.DicomStore,
      destination: deid_types.DicomStore,
      cancel_token: Optional[operation_poller.CancellationToken] = None,
  ) -> Mapping[str, Any]:
    operation_name = self.trigger_deidentify(source, destination)
    poller = operation_poller.OperationPoller(
        self.get_operation, self._poll_policy
    )
    return poller.wait(operation_name, cancel_token)

  def get_operation(self, operation_name: str) -> Mapping[str, Any]:
    return self._execute(
        'operations.get',
        self._client.projects()
        .locations()
        .datasets()
        .operations()
        .get(name=operation_name),
    )

  def import_dicom_instance(
      self, store: deid_types.DicomStore, content_uri: str
  ) -> str:
    _validate_gcs_uri(content_uri)
    response = self._execute(
        'dicomStores.import',
        self._dicom_stores().import_(
            name=store.name, body={'gcsSource': {'uri': content_uri}}
        ),
    )
    cloud_logging_client.info(
        'DICOM import accepted.',
        {'store': store.name, 'content_uri': content_uri},
        response,
    )
    return response.get('name', '')

  def export_dicom_instance(
      self, store: deid_types.DicomStore, gcs_destination: str
  ) -> str:
    _validate_gcs_uri(gcs_destination)
    response = self._execute(
        'dicomStores.export',
        self._dicom_stores().export(
            name=store.name,
            body={'gcsDestination': {'uriPrefix': gcs_destination}},
        ),
    )
    cloud_logging_client.info(
        'DICOM export accepted.',
        {'store': store.name, 'gcs_destination': gcs_destination},
        response,
    )
    return response.get('name', '')
