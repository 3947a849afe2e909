# Mail Package
