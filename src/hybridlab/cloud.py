"""Azure Resource Manager access for the lab: login, subscriptions, resource groups, Arc resources."""

import logging
import shutil
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from azure.core.exceptions import ClientAuthenticationError, ResourceNotFoundError
from azure.identity import AzureCliCredential, ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.hybridcompute import HybridComputeManagementClient
from azure.mgmt.hybridcompute.models import MachineExtension, MachineExtensionProperties
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient
from azure.mgmt.resource.resources.models import ExtendedLocation, GenericResource

from hybridlab.config import Config

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"

AZURE_STACK_HCI_API = "2024-01-01"
CUSTOM_LOCATION_API = "2021-08-15"
HYBRID_CONNECTIVITY_API = "2023-03-15"

REQUIRED_PROVIDERS = [
    "Microsoft.HybridCompute",
    "Microsoft.GuestConfiguration",
    "Microsoft.HybridConnectivity",
    "Microsoft.AzureStackHCI",
    "Microsoft.Kubernetes",
    "Microsoft.KubernetesConfiguration",
    "Microsoft.ExtendedLocation",
    "Microsoft.ResourceConnector",
    "Microsoft.HybridContainerService",
    "Microsoft.Attestation",
    "Microsoft.Storage",
    "Microsoft.Insights",
]


@dataclass
class Subscription:
    subscription_id: str
    display_name: str
    state: str
    tenant_id: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.state.lower() == "enabled"


def azure_cli() -> str:
    """Full path of the Azure CLI (az.cmd on Windows, which CreateProcess will not find as bare 'az')."""
    path = shutil.which("az")
    if path is None:
        raise RuntimeError("Azure CLI not found - install it and make sure 'az' is on PATH")
    return path


def create_credential() -> Any:
    """Service principal when configured, otherwise the signed-in Azure CLI account."""
    if Config.AZURE_CLIENT_ID and Config.AZURE_CLIENT_SECRET:
        Config.require("AZURE_TENANT_ID")
        return ClientSecretCredential(
            tenant_id=Config.AZURE_TENANT_ID,
            client_id=Config.AZURE_CLIENT_ID,
            client_secret=Config.AZURE_CLIENT_SECRET,
        )
    return AzureCliCredential(tenant_id=Config.AZURE_TENANT_ID or None)


class AzureClient:
    """Thin wrapper over the management SDK clients the lab needs."""

    def __init__(self, credential: Any = None, subscription_id: Optional[str] = None) -> None:
        self.credential = credential or create_credential()
        self.subscription_id = subscription_id or Config.subscription_or_none()
        self._resource: Optional[ResourceManagementClient] = None
        self._compute: Optional[ComputeManagementClient] = None
        self._hybrid: Optional[HybridComputeManagementClient] = None

    # --- login / subscription ---

    def login(self, retries: Optional[int] = None, delay: Optional[int] = None) -> str:
        """
        Acquire an ARM access token, retrying a fixed number of times.

        Returns:
            The ARM access token string

        Raises:
            RuntimeError: If every attempt fails
        """
        retries = retries or Config.AZURE_LOGIN_RETRIES
        delay = Config.AZURE_LOGIN_RETRY_DELAY if delay is None else delay

        for attempt in range(1, retries + 1):
            try:
                token = self.credential.get_token(ARM_SCOPE)
                logger.info(f"Azure login succeeded (attempt {attempt})")
                return token.token  # type: ignore[no-any-return]
            except ClientAuthenticationError as e:
                logger.warning(f"Azure login attempt {attempt}/{retries} failed: {e.message}")
                if attempt < retries:
                    time.sleep(delay)

        raise RuntimeError(f"Azure login failed after {retries} attempts - run 'az login' or check the service principal")

    def list_subscriptions(self) -> List[Subscription]:
        client = SubscriptionClient(self.credential)
        return [
            Subscription(
                subscription_id=s.subscription_id,
                display_name=s.display_name,
                state=str(getattr(s.state, "value", s.state)),
                tenant_id=getattr(s, "tenant_id", None),
            )
            for s in client.subscriptions.list()
        ]

    def select_subscription(self, subscription_id: Optional[str] = None) -> Subscription:
        """
        Pick the subscription to deploy into.

        The requested id wins when it is enabled; otherwise the only enabled
        subscription is used.

        Raises:
            RuntimeError: If the choice is ambiguous or the requested id is unusable
        """
        wanted = subscription_id or self.subscription_id
        enabled = [s for s in self.list_subscriptions() if s.enabled]

        if wanted:
            for sub in enabled:
                if sub.subscription_id == wanted:
                    self._use(sub.subscription_id)
                    return sub
            raise RuntimeError(f"Subscription {wanted} not found or not enabled")

        if len(enabled) == 1:
            self._use(enabled[0].subscription_id)
            return enabled[0]

        if not enabled:
            raise RuntimeError("No enabled Azure subscriptions available")

        choices = ", ".join(f"{s.display_name} ({s.subscription_id})" for s in enabled)
        raise RuntimeError(f"Multiple subscriptions available, set AZURE_SUBSCRIPTION_ID to one of: {choices}")

    def _use(self, subscription_id: str) -> None:
        if subscription_id != self.subscription_id:
            self._resource = self._compute = self._hybrid = None
        self.subscription_id = subscription_id

    def _require_subscription(self) -> str:
        if not self.subscription_id:
            raise RuntimeError("No Azure subscription selected")
        return self.subscription_id

    # --- SDK clients ---

    @property
    def resource(self) -> ResourceManagementClient:
        if self._resource is None:
            self._resource = ResourceManagementClient(self.credential, self._require_subscription())
        return self._resource

    @property
    def compute(self) -> ComputeManagementClient:
        if self._compute is None:
            self._compute = ComputeManagementClient(self.credential, self._require_subscription())
        return self._compute

    @property
    def hybrid(self) -> HybridComputeManagementClient:
        if self._hybrid is None:
            self._hybrid = HybridComputeManagementClient(self.credential, self._require_subscription())
        return self._hybrid

    # --- resource groups / providers ---

    def ensure_resource_group(self, name: str, location: str) -> bool:
        """Create the resource group if absent. Returns True if created."""
        if self.resource.resource_groups.check_existence(name):
            print(f"✅ Resource group {name!r} exists")
            return False
        print(f"🆕 Creating resource group {name!r} in {location}")
        self.resource.resource_groups.create_or_update(name, {"location": location})
        return True

    def delete_resource_group(self, name: str) -> bool:
        if not self.resource.resource_groups.check_existence(name):
            return False
        print(f"🗑️  Deleting resource group {name!r}")
        self.resource.resource_groups.begin_delete(name).result()
        return True

    def register_providers(self, namespaces: Iterable[str] = REQUIRED_PROVIDERS) -> List[str]:
        """Register resource providers that are not registered yet. Returns those registered now."""
        registered = []
        for namespace in namespaces:
            provider = self.resource.providers.get(namespace)
            if (provider.registration_state or "").lower() == "registered":
                continue
            logger.info(f"Registering resource provider {namespace}")
            self.resource.providers.register(namespace)
            registered.append(namespace)
        if registered:
            print(f"📝 Registered providers: {', '.join(registered)}")
        return registered

    # --- resource ids ---

    def _rg_scope(self, resource_group: str) -> str:
        return f"/subscriptions/{self._require_subscription()}/resourceGroups/{resource_group}"

    def machine_id(self, resource_group: str, machine: str) -> str:
        return f"{self._rg_scope(resource_group)}/providers/Microsoft.HybridCompute/machines/{machine}"

    def cluster_id(self, resource_group: str, cluster: str) -> str:
        return f"{self._rg_scope(resource_group)}/providers/Microsoft.AzureStackHCI/clusters/{cluster}"

    def custom_location_id(self, resource_group: str, name: str) -> str:
        return f"{self._rg_scope(resource_group)}/providers/Microsoft.ExtendedLocation/customLocations/{name}"

    def gallery_image_id(self, resource_group: str, image: str) -> str:
        return f"{self._rg_scope(resource_group)}/providers/Microsoft.AzureStackHCI/galleryImages/{image}"

    def marketplace_gallery_image_id(self, resource_group: str, image: str) -> str:
        return f"{self._rg_scope(resource_group)}/providers/Microsoft.AzureStackHCI/marketplaceGalleryImages/{image}"

    # --- generic resources ---

    def resource_exists(self, resource_id: str, api_version: str) -> bool:
        return bool(self.resource.resources.check_existence_by_id(resource_id, api_version))

    def get_resource(self, resource_id: str, api_version: str) -> Optional[GenericResource]:
        try:
            return self.resource.resources.get_by_id(resource_id, api_version)
        except ResourceNotFoundError:
            return None

    def put_resource(
        self,
        resource_id: str,
        api_version: str,
        properties: Dict[str, Any],
        location: Optional[str] = None,
        custom_location: Optional[str] = None,
    ) -> GenericResource:
        """Create or update any ARM resource by id and wait for completion."""
        body = GenericResource(location=location, properties=properties)
        if custom_location:
            body.extended_location = ExtendedLocation(type="CustomLocation", name=custom_location)
        logger.info(f"PUT {resource_id}")
        return self.resource.resources.begin_create_or_update_by_id(resource_id, api_version, body).result()

    def delete_resource(self, resource_id: str, api_version: str) -> bool:
        """Delete a resource by id. Returns False if it did not exist."""
        if not self.resource_exists(resource_id, api_version):
            return False
        logger.info(f"DELETE {resource_id}")
        self.resource.resources.begin_delete_by_id(resource_id, api_version).result()
        return True

    # --- Arc machines ---

    def get_machine(self, resource_group: str, machine: str) -> Optional[Any]:
        try:
            return self.hybrid.machines.get(resource_group, machine)
        except ResourceNotFoundError:
            return None

    def delete_machine(self, resource_group: str, machine: str) -> bool:
        if self.get_machine(resource_group, machine) is None:
            return False
        self.hybrid.machines.delete(resource_group, machine)
        return True

    def list_extensions(self, resource_group: str, machine: str) -> List[Any]:
        return list(self.hybrid.machine_extensions.list(resource_group, machine))

    def delete_extension(self, resource_group: str, machine: str, extension: str) -> None:
        self.hybrid.machine_extensions.begin_delete(resource_group, machine, extension).result()

    def create_extension(
        self,
        resource_group: str,
        machine: str,
        extension: str,
        publisher: str,
        extension_type: str,
        location: str,
        wait: bool = False,
    ) -> None:
        """Install an extension; returns once accepted unless wait is set."""
        params = MachineExtension(
            location=location,
            properties=MachineExtensionProperties(
                publisher=publisher,
                type=extension_type,
                enable_automatic_upgrade=True,
            ),
        )
        poller = self.hybrid.machine_extensions.begin_create_or_update(resource_group, machine, extension, params)
        if wait:
            poller.result()
