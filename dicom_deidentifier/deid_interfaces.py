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
"""Capabilities the coordinator and request handlers are built against."""
import abc
from typing import Any, List, Mapping, Optional

from dicom_deidentifier import deid_types
from dicom_deidentifier import operation_poller


class UrlSigner(metaclass=abc.ABCMeta):
  """Issues signed URLs scoped to one storage object and one HTTP method."""

  @abc.abstractmethod
  def generate_presigned_bucket_url(
      self,
      bucket: deid_types.CloudStorageBucket,
      obj: deid_types.CloudStorageObject,
      method: str,
  ) -> deid_types.SignedBucketURL:
    """Returns signed URL or raises DeidError."""


class DicomStoreLifecycle(metaclass=abc.ABCMeta):
  """DICOM store operations scoped to a single Healthcare API dataset."""

  @abc.abstractmethod
  def create_dicom_store(self, store_id: str) -> deid_types.DicomStore:
    """Creates store; remote conflicts are not masked."""

  @abc.abstractmethod
  def delete_dicom_store(self, store_id: str) -> None:
    """Deletes store."""

  @abc.abstractmethod
  def get_dicom_store_list(self) -> List[deid_types.DicomStore]:
    """Returns stores in dataset."""

  @abc.abstractmethod
  def create_dicom_instances(
      self, store: deid_types.DicomStore, *dicoms: deid_types.Dicom
  ) -> None:
    """Uploads instances in order; stops at first failure."""

  @abc.abstractmethod
  def trigger_deidentify(
      self, source: deid_types.DicomStore, destination: deid_types.DicomStore
  ) -> str:
    """Requests de-identification; returns long-running operation name."""

  @abc.abstractmethod
  def deidentify_dicom_store(
      self,
      source: deid_types.DicomStore,
      destination: deid_types.DicomStore,
      cancel_token: Optional[operation_poller.CancellationToken] = None,
  ) -> Mapping[str, Any]:
    """Requests de-identification and blocks until operation is terminal."""

  @abc.abstractmethod
  def get_operation(self, operation_name: str) -> Mapping[str, Any]:
    """Returns long-running operation JSON."""

  @abc.abstractmethod
  def import_dicom_instance(
      self, store: deid_types.DicomStore, content_uri: str
  ) -> str:
    """Requests GCS import; returns once accepted."""

  @abc.abstractmethod
  def export_dicom_instance(
      self, store: deid_types.DicomStore, gcs_destination: str
  ) -> str:
    """Requests GCS export; returns once accepted."""
