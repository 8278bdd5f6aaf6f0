from rexa.rexa_errors import *  # noqa: F401,F403
from rexa.rexa_datatypes import Stem, FunctionEntry, FunctionMetadata, receives_pipe, operation
from rexa.rexa_resolver import rexa_api_method, CapabilityBridge, ControlChannel
from rexa.rexa_address import AddressHandler, HandlerInfo, HandlerReply, DispatchContext, MethodTableHandler
from rexa.rexa_modules import ModuleLoader
from rexa.rexa_config import RexaConfig
from rexa.rexa_runtime import ScriptRunner, ExecutionResult, RexaHost, StdLib

__version__ = "0.1.0"
