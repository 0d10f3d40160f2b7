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
"""Wrapper for cloud ops structured logging.

Usage:
  cloud_logging_client.set_log_signature({'source_store': 'raw'})
  cloud_logging_client.info('Store created.', {'store': name})
  cloud_logging_client.error('Upload failed.', {'path': path}, exp)

Every log carries the calling thread's log signature. When running under
unittest, or when cloud credentials are unavailable, logs are written to
absl logging instead of Cloud Logging.
"""
from __future__ import annotations

import collections
import enum
import inspect
import logging
import os
import sys
import threading
import traceback
from typing import Any, List, Mapping, MutableMapping, Optional, Tuple, Union

from absl import flags
from absl import logging as absl_logging
import google.auth
from google.cloud import logging as cloud_logging
import psutil

from shared_libs.flags import secret_flag_utils

CLOUD_OPS_LOG_NAME_FLG = flags.DEFINE_string(
    'ops_log_name',
    secret_flag_utils.get_secret_or_env(
        'CLOUD_OPS_LOG_NAME', 'dicom_deidentifier'
    ),
    'Cloud ops log name to write logs to.',
)
CLOUD_OPS_LOG_PROJECT_FLG = flags.DEFINE_string(
    'ops_log_project',
    secret_flag_utils.get_secret_or_env('CLOUD_OPS_LOG_PROJECT', None),
    'GCP project name to write log to. Undefined = default',
)
POD_HOSTNAME_FLG = flags.DEFINE_string(
    'pod_hostname',
    secret_flag_utils.get_secret_or_env('HOSTNAME', None),
    'Host name of the container. Set by container ENV.',
)
DISABLE_STRUCTURED_LOGGING_FLG = flags.DEFINE_boolean(
    'disable_structured_logging',
    secret_flag_utils.get_bool_secret_or_env('DISABLE_STRUCTURED_LOGGING'),
    'Disable structured logging.',
)

_LOGGER_FLAGS = (
    CLOUD_OPS_LOG_NAME_FLG,
    CLOUD_OPS_LOG_PROJECT_FLG,
    POD_HOSTNAME_FLG,
    DISABLE_STRUCTURED_LOGGING_FLG,
)

# Unit tests log to absl.
USE_ABSL_LOGGING = 'unittest' in sys.modules

# Cloud logging entry size limit is 256KB; values are clipped below it.
MAX_LOG_VALUE_SIZE = 64000

_StructArg = Union[Mapping[str, Any], Exception, None]


class _LogSeverity(enum.Enum):
  CRITICAL = logging.CRITICAL
  ERROR = logging.ERROR
  WARNING = logging.WARNING
  INFO = logging.INFO
  DEBUG = logging.DEBUG


class CloudLoggerInstanceExceptionError(Exception):
  pass


def _format_exception(exp: Exception) -> str:
  text = str(exp)
  trace = ''.join(
      traceback.format_exception(type(exp), exp, exp.__traceback__)
  )
  return f'{text}\n{trace}' if text else trace


def _merge_struct(
    struct: Tuple[_StructArg, ...],
) -> MutableMapping[str, str]:
  """Merges dicts and exceptions into a single ordered dict of str values.

  Keys of plain dicts are added in sorted order; OrderedDict order is kept.
  Exceptions are logged under the 'exception' key with their traceback.

  Args:
    struct: Items to merge.

  Returns:
    Merged dict.
  """
  merged = collections.OrderedDict()
  for item in struct:
    if item is None:
      continue
    if isinstance(item, Exception):
      merged['exception'] = _format_exception(item)
      continue
    keys = list(item)
    if not isinstance(item, collections.OrderedDict):
      keys = sorted(keys, key=str)
    for key in keys:
      value = str(item[key])
      if len(value) > MAX_LOG_VALUE_SIZE:
        value = value[:MAX_LOG_VALUE_SIZE]
      merged[str(key)] = value
  return merged


def _source_location(stack_frames_back: int) -> Mapping[str, Any]:
  """Returns source_location of the caller stack_frames_back frames up."""
  frame = inspect.currentframe()
  try:
    for _ in range(stack_frames_back + 1):
      if frame is None:
        return {}
      frame = frame.f_back
    if frame is None:
      return {}
    info = inspect.getframeinfo(frame)
    return {
        'source_location': {
            'file': info.filename,
            'function': info.function,
            'line': info.lineno,
        }
    }
  finally:
    del frame


def _absl_log(msg: str, severity: _LogSeverity) -> None:
  if severity == _LogSeverity.DEBUG:
    absl_logging.debug(msg)
  elif severity == _LogSeverity.INFO:
    absl_logging.info(msg)
  elif severity == _LogSeverity.WARNING:
    absl_logging.warning(msg)
  else:
    absl_logging.error(msg)


def _default_gcp_project() -> str:
  try:
    _, project = google.auth.default(
        scopes=['https://www.googleapis.com/auth/cloud-platform']
    )
    return project if project else ''
  except google.auth.exceptions.DefaultCredentialsError:
    return ''


def _get_logger_flags(argv: List[str]) -> List[str]:
  """Returns argv filtered to the flags the logger itself defines.

  Allows the logger to initialize before an application has parsed its own
  (possibly not yet defined) flags.

  Args:
    argv: Command line arguments.
  """
  if not argv:
    return []
  names = [flg.name for flg in _LOGGER_FLAGS]
  names.extend(f'no{flg.name}' for flg in _LOGGER_FLAGS)
  result = [argv[0]]
  keep = False
  for param in argv[1:]:
    if param.startswith('-'):
      flag_name = param.lstrip('-').split('=', 1)[0]
      keep = flag_name in names
    if keep:
      result.append(param)
  return result


def _are_flags_parsed() -> bool:
  return flags.FLAGS.is_parsed()


class CloudLoggingClient:
  """Structured logger which attaches a per-thread signature to each log."""

  _singleton_instance: Optional[CloudLoggingClient] = None
  _singleton_lock = threading.RLock()
  _handler: Optional[cloud_logging.handlers.CloudLoggingHandler] = None

  def __init__(
      self,
      log_name: str = 'dicom_deidentifier',
      gcp_project: str = '',
      pod_hostname: str = '',
      disable_structured_logging: bool = False,
      use_absl_logging: bool = USE_ABSL_LOGGING,
  ):
    self._log_name = log_name.strip()
    self._gcp_project = gcp_project.strip()
    self._pod_hostname = pod_hostname.strip()
    self._disable_structured_logging = disable_structured_logging
    self._use_absl_logging = use_absl_logging
    self._log_lock = threading.RLock()
    self._thread_local = threading.local()
    absl_logging.set_verbosity(absl_logging.INFO)
    self._python_logger = self._init_cloud_handler()

  @classmethod
  def fork_shutdown(cls) -> None:
    """Stops cloud logging transport thread prior to process fork."""
    with cls._singleton_lock:
      handler = cls._handler
      cls._handler = None
      cls._singleton_instance = None
      if handler is None:
        return
      handler.transport.worker.stop()
      logging.getLogger().removeHandler(handler)
      handler.close()

  @classmethod
  def _init_fork_module_state(cls) -> None:
    cls._singleton_lock = threading.RLock()
    cls._singleton_instance = None
    cls._handler = None

  def _init_cloud_handler(self) -> logging.Logger:
    if self._use_absl_logging:
      return logging.getLogger()
    if CloudLoggingClient._handler is not None:
      return logging.getLogger(self._log_name)
    try:
      client = cloud_logging.Client(
          project=self._gcp_project if self._gcp_project else None
      )
      handler = cloud_logging.handlers.CloudLoggingHandler(
          client=client, name=self._log_name
      )
    except google.auth.exceptions.DefaultCredentialsError as exp:
      self._use_absl_logging = True
      self.warning(
          'Cloud logging unavailable; logging to absl.',
          {'log_name': self._log_name},
          exp,
      )
      return logging.getLogger()
    CloudLoggingClient._handler = handler
    cloud_logging.handlers.setup_logging(handler, log_level=logging.INFO)
    python_logger = logging.getLogger(self._log_name)
    python_logger.setLevel(logging.DEBUG)
    return python_logger

  @property
  def use_absl_logging(self) -> bool:
    return self._use_absl_logging

  @property
  def gcp_project_name(self) -> str:
    return self._gcp_project

  def _signature_defaults(self) -> MutableMapping[str, str]:
    signature = collections.OrderedDict()
    if self._pod_hostname:
      signature['HOSTNAME'] = self._pod_hostname
    signature['THREAD_ID'] = str(threading.get_native_id())
    return signature

  def _thread_signature(self) -> MutableMapping[str, str]:
    signature = getattr(self._thread_local, 'signature', None)
    if signature is None:
      signature = self._signature_defaults()
      self._thread_local.signature = signature
    return signature

  @property
  def log_signature(self) -> Mapping[str, str]:
    return dict(self._thread_signature())

  @log_signature.setter
  def log_signature(self, sig: Optional[Mapping[str, Any]]) -> None:
    signature = collections.OrderedDict()
    if sig:
      for key in sorted(sig, key=str):
        signature[str(key)] = str(sig[key])
    signature.update(self._signature_defaults())
    self._thread_local.signature = signature

  def clear_log_signature(self) -> None:
    self._thread_local.signature = self._signature_defaults()

  def _log(
      self,
      msg: str,
      severity: _LogSeverity,
      struct: Tuple[_StructArg, ...],
      stack_frames_back: int,
  ) -> None:
    fields = _merge_struct(struct)
    fields.update(self._thread_signature())
    with self._log_lock:
      if not self._use_absl_logging and not self._disable_structured_logging:
        self._python_logger.log(
            severity.value,
            msg,
            extra={
                'json_fields': fields,
                **_source_location(stack_frames_back + 1),
            },
        )
        return
      text = [msg]
      text.extend(f'{key}: {value}' for key, value in fields.items())
      _absl_log('; '.join(text), severity)

  def debug(self, msg: str, *struct: _StructArg, stack_frames_back: int = 0):
    self._log(msg, _LogSeverity.DEBUG, struct, stack_frames_back + 1)

  def info(self, msg: str, *struct: _StructArg, stack_frames_back: int = 0):
    self._log(msg, _LogSeverity.INFO, struct, stack_frames_back + 1)

  def warning(self, msg: str, *struct: _StructArg, stack_frames_back: int = 0):
    self._log(msg, _LogSeverity.WARNING, struct, stack_frames_back + 1)

  def error(self, msg: str, *struct: _StructArg, stack_frames_back: int = 0):
    self._log(msg, _LogSeverity.ERROR, struct, stack_frames_back + 1)

  def critical(
      self, msg: str, *struct: _StructArg, stack_frames_back: int = 0
  ):
    self._log(msg, _LogSeverity.CRITICAL, struct, stack_frames_back + 1)

  def startup_msg(self) -> None:
    """Logs process details once after the logger is initialized."""
    if self._use_absl_logging:
      return
    pid = os.getpid()
    vm = psutil.virtual_memory()
    self.debug(
        'Process started.',
        {
            'process_name': psutil.Process(pid).name(),
            'process_id': pid,
            'processors(count)': os.cpu_count(),
            'total_system_mem_(bytes)': vm.total,
            'available_system_mem_(bytes)': vm.available,
            'gcp_project': self._gcp_project or 'DEFAULT',
        },
    )

  @classmethod
  def logger(cls) -> CloudLoggingClient:
    if cls._singleton_instance is not None:
      return cls._singleton_instance
    with cls._singleton_lock:
      if cls._singleton_instance is None:
        if not _are_flags_parsed():
          flags.FLAGS(_get_logger_flags(sys.argv))
        project = CLOUD_OPS_LOG_PROJECT_FLG.value
        if not project and not USE_ABSL_LOGGING:
          project = _default_gcp_project()
        instance = CloudLoggingClient(
            log_name=CLOUD_OPS_LOG_NAME_FLG.value,
            gcp_project=project if project else '',
            pod_hostname=POD_HOSTNAME_FLG.value or '',
            disable_structured_logging=DISABLE_STRUCTURED_LOGGING_FLG.value,
        )
        cls._singleton_instance = instance
        instance.startup_msg()
      return cls._singleton_instance


def logger() -> CloudLoggingClient:
  return CloudLoggingClient.logger()


def debug(msg: str, *struct: _StructArg, stack_frames_back: int = 0) -> None:
  logger().debug(msg, *struct, stack_frames_back=stack_frames_back + 1)


def info(msg: str, *struct: _StructArg, stack_frames_back: int = 0) -> None:
  logger().info(msg, *struct, stack_frames_back=stack_frames_back + 1)


def warning(msg: str, *struct: _StructArg, stack_frames_back: int = 0) -> None:
  logger().warning(msg, *struct, stack_frames_back=stack_frames_back + 1)


def error(msg: str, *struct: _StructArg, stack_frames_back: int = 0) -> None:
  """Logs with error severity.

  Args:
    msg: Message to log (string).
    *struct: Zero or more dict or exception to log in structured log.
    stack_frames_back: Additional stack frames back to log source_location.
  """
  logger().error(msg, *struct, stack_frames_back=stack_frames_back + 1)


def critical(
    msg: str, *struct: _StructArg, stack_frames_back: int = 0
) -> None:
  logger().critical(msg, *struct, stack_frames_back=stack_frames_back + 1)


def get_log_signature() -> Mapping[str, str]:
  return logger().log_signature


def set_log_signature(sig: Mapping[str, Any]) -> None:
  logger().log_signature = sig


def clear_log_signature() -> None:
  logger().clear_log_signature()


# The cloud logging transport runs a background thread which does not survive
# fork (gunicorn workers); it is stopped before fork and re-created lazily.
os.register_at_fork(
    before=CloudLoggingClient.fork_shutdown,
    after_in_child=CloudLoggingClient._init_fork_module_state,  # pylint: disable=protected-access
)
