# Jobs Package - scheduled maintenance entry points
