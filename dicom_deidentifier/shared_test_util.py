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
"""Fakes shared by unit tests."""
import json
from typing import Any, Dict, List, Mapping, Optional, Tuple

import simple_websocket

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_types
from dicom_deidentifier import operation_poller

DATASET = deid_types.DatasetPath('test-prj', 'us-central1', 'test-ds')
SIGNED_URL = 'https://test-signed-url-success.com'


class FakeDicomStoreLifecycle(deid_interfaces.DicomStoreLifecycle):
  """In memory store service which records calls.

  Operation responses are returned in order from operation_responses; the
  last response repeats. Methods named in fail_on raise the mapped error.
  """

  def __init__(
      self,
      operation_responses: Optional[List[Mapping[str, Any]]] = None,
      fail_on: Optional[Mapping[str, Exception]] = None,
  ):
    self.calls: List[Tuple[str, Any]] = []
    self.stores: Dict[str, deid_types.DicomStore] = {}
    self._operation_responses = list(
        operation_responses
        if operation_responses is not None
        else [{'done': True}]
    )
    self._fail_on = dict(fail_on) if fail_on else {}

  def _record(self, method: str, *args: Any) -> None:
    self.calls.append((method, args))
    exp = self._fail_on.get(method)
    if exp is not None:
      raise exp

  @property
  def method_calls(self) -> List[str]:
    return [method for method, _ in self.calls]

  def create_dicom_store(self, store_id):
    self._record('create_dicom_store', store_id)
    if store_id in self.stores:
      raise deid_errors.DeidError(
          deid_errors.ErrorKind.CONFLICT, 'dicomStores.create: exists'
      )
    store = deid_types.DicomStore(store_id, DATASET.store_name(store_id))
    self.stores[store_id] = store
    return store

  def delete_dicom_store(self, store_id):
    self._record('delete_dicom_store', store_id)
    self.stores.pop(store_id, None)

  def get_dicom_store_list(self):
    self._record('get_dicom_store_list')
    return list(self.stores.values())

  def create_dicom_instances(self, store, *dicoms):
    self._record('create_dicom_instances', store, *dicoms)

  def trigger_deidentify(self, source, destination):
    self._record('trigger_deidentify', source, destination)
    return f'{DATASET.name}/operations/deid'

  def deidentify_dicom_store(self, source, destination, cancel_token=None):
    name = self.trigger_deidentify(source, destination)
    poller = operation_poller.OperationPoller(
        self.get_operation,
        operation_poller.PollPolicy(interval_sec=0, max_attempts=10),
    )
    return poller.wait(name, cancel_token)

  def get_operation(self, operation_name):
    self._record('get_operation', operation_name)
    if len(self._operation_responses) > 1:
      return self._operation_responses.pop(0)
    return self._operation_responses[0]

  def import_dicom_instance(self, store, content_uri):
    self._record('import_dicom_instance', store, content_uri)
    return f'{DATASET.name}/operations/import'

  def export_dicom_instance(self, store, gcs_destination):
    self._record('export_dicom_instance', store, gcs_destination)
    return f'{DATASET.name}/operations/export'


class FakeUrlSigner(deid_interfaces.UrlSigner):

  def __init__(self, url: str = SIGNED_URL, error: Optional[Exception] = None):
    self.url = url
    self.error = error
    self.calls = []

  def generate_presigned_bucket_url(self, bucket, obj, method):
    self.calls.append((bucket, obj, method))
    if self.error is not None:
      raise self.error
    return deid_types.SignedBucketURL(url=self.url)


class FakeWebSocket:
  """Stands in for flask_sock's simple_websocket.Server."""

  def __init__(self, messages: List[Any]):
    self._messages = [
        msg if isinstance(msg, str) else json.dumps(msg) for msg in messages
    ]
    self.sent: List[str] = []

  def receive(self, timeout=None):
    del timeout
    if not self._messages:
      raise simple_websocket.ConnectionClosed()
    return self._messages.pop(0)

  def send(self, data: str) -> None:
    self.sent.append(data)

  @property
  def sent_json(self) -> List[Any]:
    return [json.loads(msg) for msg in self.sent]
