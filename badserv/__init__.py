from badserv.context import Context as Context
from badserv.engine import Action as Action
from badserv.engine import Service as Service
from badserv.ids import ConnTagger as ConnTagger
from badserv.request import Request as Request
from badserv.response import Response as Response
from badserv.server import Server as Server
from badserv.server import serve as serve

__all__ = ["Action", "ConnTagger", "Context", "Request", "Response", "Server", "Service", "serve"]
