from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from points.api import app
from points.config import PointsSettings, configure_logging

configure_logging(PointsSettings.from_env())

app.root_path = "/api"

handler = Mangum(app)
