from mangum import Mangum

from referrals.api import create_app
from referrals.container import build_services
from referrals.logging_config import setup_logging
from referrals.settings import get_settings

settings = get_settings()
setup_logging(settings)

app = create_app(build_services(settings))

handler = Mangum(app)
