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
"""Value types passed between the gateways, coordinator and front end."""
from __future__ import annotations

import dataclasses
import os
from typing import Any, Dict, Mapping, Optional

from dicom_deidentifier import deid_errors

URL_SIGNING_STATUS_KEY = 'url-signing-status'


@dataclasses.dataclass(frozen=True)
class DatasetPath:
  """Healthcare API dataset that all DICOM stores are created in."""

  project: str
  location: str
  dataset: str

  @property
  def name(self) -> str:
    return (
        f'projects/{self.project}/locations/{self.location}'
        f'/datasets/{self.dataset}'
    )

  def store_name(self, store_id: str) -> str:
    return f'{self.name}/dicomStores/{store_id}'


@dataclasses.dataclass(frozen=True)
class DicomStore:
  store_id: str
  name: str

  @classmethod
  def from_name(cls, name: str) -> DicomStore:
    return DicomStore(store_id=name.rstrip('/').split('/')[-1], name=name)


@dataclasses.dataclass(frozen=True)
class Dicom:
  """Local DICOM instance awaiting upload."""

  name: str
  path: str

  @classmethod
  def from_path(cls, path: str) -> Dicom:
    return Dicom(name=os.path.basename(path), path=path)


@dataclasses.dataclass(frozen=True)
class CloudStorageBucket:
  name: str


@dataclasses.dataclass(frozen=True)
class CloudStorageObject:
  name: str

  @classmethod
  def from_json(cls, data: Optional[Mapping[str, Any]]) -> CloudStorageObject:
    """Decodes object reference from request JSON.

    Args:
      data: Decoded JSON request body, e.g. {"name": "scan-1.dcm"}.

    Returns:
      CloudStorageObject

    Raises:
      DeidError: Request does not name an object.
    """
    if isinstance(data, Mapping):
      name = data.get('name')
      if isinstance(name, str) and name.strip():
        return CloudStorageObject(name.strip())
    raise deid_errors.DeidError(deid_errors.ErrorKind.INVALID, 'invalid request')


@dataclasses.dataclass(frozen=True)
class SignedBucketURL:
  url: str
  status: str = ''

  def to_json(self) -> Dict[str, str]:
    result = {'url': self.url}
    if self.status:
      result[URL_SIGNING_STATUS_KEY] = self.status
    return result
