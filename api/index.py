from mangum import Mangum

from billing.api import app

app.root_path = "/api"

handler = Mangum(app)
