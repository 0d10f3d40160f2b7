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
"""Tests for healthcare_gateway."""
import os

from absl.testing import absltest
from absl.testing import parameterized
from googleapiclient import errors as googleapiclient_errors
import httplib2
import mock
import requests_mock

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_types
from dicom_deidentifier import healthcare_api_const
from dicom_deidentifier import healthcare_gateway
from dicom_deidentifier import operation_poller

_BASE_URL = 'https://healthcare.googleapis.com/v1'
_DATASET = deid_types.DatasetPath('prj', 'us-central1', 'ds')
_OP_NAME = f'{_DATASET.name}/operations/42'
_POLICY = operation_poller.PollPolicy(interval_sec=0, max_attempts=5)


def _http_error(status: int) -> googleapiclient_errors.HttpError:
  return googleapiclient_errors.HttpError(
      httplib2.Response({'status': status}), b'remote failure'
  )


def _credentials() -> mock.Mock:
  credentials = mock.Mock()
  credentials.valid = True
  credentials.apply.side_effect = lambda headers: headers.update(
      {'authorization': 'Bearer token'}
  )
  return credentials


class HealthcareGatewayTest(parameterized.TestCase):

  def setUp(self):
    super().setUp()
    self.client = mock.MagicMock()
    self.dicom_stores = (
        self.client.projects.return_value.locations.return_value.datasets.return_value.dicomStores.return_value
    )
    self.operations = (
        self.client.projects.return_value.locations.return_value.datasets.return_value.operations.return_value
    )
    self.credentials = _credentials()
    self.gateway = healthcare_gateway.HealthcareGateway(
        _DATASET,
        _POLICY,
        healthcare_client=self.client,
        credentials=self.credentials,
        base_url=_BASE_URL,
    )
    self.source = self.gateway.store_ref('source')
    self.destination = self.gateway.store_ref('destination')

  def _write_dicom(self, name: str) -> deid_types.Dicom:
    path = self.create_tempfile(name, content=f'DICM-{name}').full_path
    return deid_types.Dicom.from_path(path)

  def test_create_dicom_store(self):
    self.dicom_stores.create.return_value.execute.return_value = {
        'name': _DATASET.store_name('source')
    }
    store = self.gateway.create_dicom_store('source')
    self.assertEqual(store, self.source)
    self.dicom_stores.create.assert_called_once_with(
        parent=_DATASET.name, dicomStoreId='source', body={}
    )

  def test_create_dicom_store_conflict(self):
    self.dicom_stores.create.return_value.execute.side_effect = _http_error(409)
    with self.assertRaises(deid_errors.DeidError) as context:
      self.gateway.create_dicom_store('source')
    self.assertEqual(context.exception.kind, deid_errors.ErrorKind.CONFLICT)
    self.assertStartsWith(context.exception.message, 'dicomStores.create')

  def test_delete_dicom_store(self):
    self.gateway.delete_dicom_store('source')
    self.dicom_stores.delete.assert_called_once_with(
        name=_DATASET.store_name('source')
    )

  def test_delete_dicom_store_not_found(self):
    self.dicom_stores.delete.return_value.execute.side_effect = _http_error(404)
    with self.assertRaises(deid_errors.DeidError) as context:
      self.gateway.delete_dicom_store('missing')
    self.assertEqual(context.exception.kind, deid_errors.ErrorKind.NOT_FOUND)

  def test_get_dicom_store_list_follows_pages(self):
    self.dicom_stores.list.return_value.execute.side_effect = [
        {
            'dicomStores': [{'name': _DATASET.store_name('a')}],
            'nextPageToken': 'next',
        },
        {'dicomStores': [{'name': _DATASET.store_name('b')}]},
    ]
    stores = self.gateway.get_dicom_store_list()
    self.assertEqual([store.store_id for store in stores], ['a', 'b'])
    self.dicom_stores.list.assert_has_calls([
        mock.call(parent=_DATASET.name),
        mock.call(parent=_DATASET.name, pageToken='next'),
    ])

  def test_get_dicom_store_list_empty(self):
    self.dicom_stores.list.return_value.execute.return_value = {}
    self.assertEqual(self.gateway.get_dicom_store_list(), [])

  def test_create_dicom_instances_uploads_each_file(self):
    dicoms = [self._write_dicom('a.dcm'), self._write_dicom('b.dcm')]
    url = f'{_BASE_URL}/{self.source.name}/dicomWeb/studies'
    with requests_mock.Mocker() as mk:
      mk.post(url, status_code=200)
      self.gateway.create_dicom_instances(self.source, *dicoms)
      self.assertEqual(mk.call_count, 2)
      request = mk.request_history[0]
      self.assertEqual(request.headers['Content-Type'], 'application/dicom')
      self.assertEqual(request.headers['authorization'], 'Bearer token')
      self.assertEqual(request.body, b'DICM-a.dcm')

  def test_create_dicom_instances_stops_at_missing_file(self):
    first = self._write_dicom('first.dcm')
    missing = deid_types.Dicom.from_path(
        os.path.join(self.create_tempdir().full_path, 'missing.dcm')
    )
    third = self._write_dicom('third.dcm')
    url = f'{_BASE_URL}/{self.source.name}/dicomWeb/studies'
    with requests_mock.Mocker() as mk:
      mk.post(url, status_code=200)
      with self.assertRaises(deid_errors.DicomIngestError) as context:
        self.gateway.create_dicom_instances(self.source, first, missing, third)
      self.assertEqual(mk.call_count, 1)
      self.assertEqual(mk.request_history[0].body, b'DICM-first.dcm')
    self.assertIn(missing.path, context.exception.message)
    self.assertEqual(context.exception.uploaded, [first])
    self.assertEqual(context.exception.failed, missing)

  def test_create_dicom_instances_stops_at_rejected_upload(self):
    dicoms = [self._write_dicom('a.dcm'), self._write_dicom('b.dcm')]
    url = f'{_BASE_URL}/{self.source.name}/dicomWeb/studies'
    with requests_mock.Mocker() as mk:
      mk.post(url, status_code=400)
      with self.assertRaises(deid_errors.DicomIngestError) as context:
        self.gateway.create_dicom_instances(self.source, *dicoms)
      self.assertEqual(mk.call_count, 1)
    self.assertStartsWith(
        context.exception.message, 'dicomWeb.storeInstances'
    )
    self.assertEqual(context.exception.uploaded, [])

  def test_add_auth_to_header_refreshes_invalid_credentials(self):
    self.credentials.valid = False
    headers = self.gateway._add_auth_to_header({})
    self.credentials.refresh.assert_called_once()
    self.assertEqual(headers, {'authorization': 'Bearer token'})

  def test_trigger_deidentify_request(self):
    self.dicom_stores.deidentify.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    self.assertEqual(
        self.gateway.trigger_deidentify(self.source, self.destination),
        _OP_NAME,
    )
    self.dicom_stores.deidentify.assert_called_once_with(
        sourceStore=self.source.name,
        body={
            'destinationStore': self.destination.name,
            'config': {
                'dicom': {'filterProfile': 'MINIMAL_KEEP_LIST_PROFILE'},
                'image': {'textRedactionMode': 'REDACT_SENSITIVE_TEXT'},
            },
        },
    )

  def test_trigger_deidentify_same_store_raises(self):
    with self.assertRaises(deid_errors.DeidError) as context:
      self.gateway.trigger_deidentify(self.source, self.source)
    self.assertEqual(context.exception.kind, deid_errors.ErrorKind.INVALID)
    self.dicom_stores.deidentify.assert_not_called()

  def test_trigger_deidentify_missing_operation_name(self):
    self.dicom_stores.deidentify.return_value.execute.return_value = {}
    with self.assertRaises(deid_errors.DeidError):
      self.gateway.trigger_deidentify(self.source, self.destination)

  def test_deidentify_dicom_store_blocks_until_done(self):
    self.dicom_stores.deidentify.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    done = {'name': _OP_NAME, 'done': True}
    self.operations.get.return_value.execute.side_effect = [{}, {}, done]
    self.assertEqual(
        self.gateway.deidentify_dicom_store(self.source, self.destination),
        done,
    )
    self.assertEqual(self.operations.get.return_value.execute.call_count, 3)
    self.operations.get.assert_called_with(name=_OP_NAME)

  def test_deidentify_dicom_store_operation_error(self):
    self.dicom_stores.deidentify.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    self.operations.get.return_value.execute.return_value = {
        'done': True,
        'error': {'code': 13, 'message': 'boom'},
    }
    with self.assertRaisesRegex(
        deid_errors.OperationFailedError, 'deidentify operation error'
    ):
      self.gateway.deidentify_dicom_store(self.source, self.destination)

  def test_deidentify_dicom_store_status_fetch_error(self):
    self.dicom_stores.deidentify.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    self.operations.get.return_value.execute.side_effect = _http_error(500)
    with self.assertRaises(deid_errors.OperationFailedError):
      self.gateway.deidentify_dicom_store(self.source, self.destination)
    self.assertEqual(self.operations.get.return_value.execute.call_count, 1)

  @parameterized.parameters([
      'gs://bucket/dicom/*.dcm',
      'gs://bucket/**',
      'gs://bucket/study?/instance.dcm',
  ])
  def test_import_dicom_instance_returns_on_acceptance(self, uri):
    self.dicom_stores.import_.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    self.assertEqual(
        self.gateway.import_dicom_instance(self.source, uri), _OP_NAME
    )
    self.dicom_stores.import_.assert_called_once_with(
        name=self.source.name, body={'gcsSource': {'uri': uri}}
    )
    self.operations.get.assert_not_called()

  @parameterized.parameters(['bucket/path', 'gs://', 'https://bucket/x'])
  def test_import_dicom_instance_invalid_uri(self, uri):
    with self.assertRaises(deid_errors.DeidError) as context:
      self.gateway.import_dicom_instance(self.source, uri)
    self.assertEqual(context.exception.kind, deid_errors.ErrorKind.INVALID)
    self.dicom_stores.import_.assert_not_called()

  def test_export_dicom_instance_returns_on_acceptance(self):
    self.dicom_stores.export.return_value.execute.return_value = {
        'name': _OP_NAME
    }
    self.assertEqual(
        self.gateway.export_dicom_instance(
            self.destination, 'gs://bucket/deid'
        ),
        _OP_NAME,
    )
    self.dicom_stores.export.assert_called_once_with(
        name=self.destination.name,
        body={'gcsDestination': {'uriPrefix': 'gs://bucket/deid'}},
    )
    self.operations.get.assert_not_called()

  def test_export_dicom_instance_error_names_operation(self):
    self.dicom_stores.export.return_value.execute.side_effect = _http_error(403)
    with self.assertRaises(deid_errors.DeidError) as context:
      self.gateway.export_dicom_instance(self.destination, 'gs://bucket/deid')
    self.assertEqual(
        context.exception.kind, deid_errors.ErrorKind.UNAUTHORIZED
    )
    self.assertStartsWith(context.exception.message, 'dicomStores.export')

  @mock.patch.object(healthcare_gateway.discovery, 'build', autospec=True)
  def test_discovery_client_built_lazily(self, mk_build):
    gateway = healthcare_gateway.HealthcareGateway(
        _DATASET, _POLICY, base_url=_BASE_URL
    )
    mk_build.assert_not_called()
    gateway.get_operation(_OP_NAME)
    mk_build.assert_called_once_with(
        healthcare_api_const.HEALTHCARE_SERVICE_NAME,
        healthcare_api_const.HEALTHCARE_API_VERSION,
        discoveryServiceUrl=(
            'https://healthcare.googleapis.com/$discovery/rest?version=v1'
        ),
        cache_discovery=False,
    )


if __name__ == '__main__':
  absltest.main()
