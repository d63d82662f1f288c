from backoffice.routers import admin, availability, class_templates, classes, contract, vacations
